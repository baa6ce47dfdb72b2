"""Tests for signed media access."""

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from fastapi import status
from httpx import ASGITransport, AsyncClient

from tcap.api.main import app


@pytest.fixture
async def client(media):
    with patch("tcap.api.routes.media.get_media_store", return_value=media):
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
        ) as ac:
            yield ac


class TestGetMedia:
    """Tests for GET /media/{path}."""

    async def test_serves_signed_file(self, client: AsyncClient, media):
        path = await media.put(b"\x89PNG pixels", "image/png", "cat.png")

        response = await client.get(media.get_access_url(path))

        assert response.status_code == status.HTTP_200_OK
        assert response.content == b"\x89PNG pixels"
        assert response.headers["content-type"] == "image/png"

    async def test_bad_signature(self, client: AsyncClient, media):
        path = await media.put(b"\x89PNG", "image/png", "cat.png")
        url = media.get_access_url(path)
        tampered = url.split("signature=")[0] + "signature=" + "0" * 64

        response = await client.get(tampered)

        assert response.status_code == status.HTTP_403_FORBIDDEN

    async def test_expired_link(self, client: AsyncClient, media):
        path = await media.put(b"\x89PNG", "image/png", "cat.png")
        issued = datetime.now(UTC) - timedelta(hours=2)

        response = await client.get(media.get_access_url(path, ttl=3600, now=issued))

        assert response.status_code == status.HTTP_403_FORBIDDEN

    async def test_missing_blob(self, client: AsyncClient, media):
        path = await media.put(b"\x89PNG", "image/png", "cat.png")
        url = media.get_access_url(path)
        await media.delete(path)

        response = await client.get(url)

        assert response.status_code == status.HTTP_404_NOT_FOUND

    async def test_missing_query(self, client: AsyncClient):
        response = await client.get("/media/anything.png")
        assert response.status_code == 422
