"""Time capsules - content that unlocks on schedule and then disappears."""

__version__ = "0.1.0"
