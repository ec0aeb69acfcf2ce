"""
Catalog client and pipeline against the fake catalog server.

Runs scripts/fake_catalog.py in a background thread on a free port.
"""

import importlib.util
import threading
from http.server import HTTPServer
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from catalog_bot.client import CatalogClient
from catalog_bot.config import CatalogConfig
from catalog_bot.errors import ApiError, Unauthorized
from catalog_bot.pipeline import CatalogPipeline

SCRIPT = Path(__file__).parents[2] / "scripts" / "fake_catalog.py"


@pytest.fixture
def fake():
    """A fresh fake server module (its state is module-global)."""
    spec = importlib.util.spec_from_file_location("fake_catalog", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def server(fake):
    httpd = HTTPServer(("127.0.0.1", 0), fake.FakeCatalogHandler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{httpd.server_address[1]}{fake.PREFIX}"
    httpd.shutdown()
    httpd.server_close()


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def client(server, sleep):
    config = CatalogConfig(
        base_url=server,
        xsrf_token="xsrf",
        cookie="session=abc",
        rate_limit_sleep_seconds=15.0,
        timeout_seconds=5.0,
    )
    return CatalogClient(config, sleep=sleep)


class TestFakeCatalog:
    async def test_listing(self, client):
        categories = await client.list_categories()
        rows = await client.list_entries(1)
        sellers = await client.list_sellers(101)

        assert [c["name"] for c in categories] == ["Pulsa", "Games", "Malaysia TOPUP"]
        assert [r["id"] for r in rows] == [101, 102, 103]
        assert sellers[0]["seller"] == "Alpha Reload"

    async def test_create_entry(self, client, fake):
        result = await client.create_entry({"id": 101, "product_code": "TSEL10"})

        assert result["success"] is True
        assert fake.SAVED == [{"id": 101, "product_code": "TSEL10"}]

    async def test_create_entry_rejected(self, client):
        with pytest.raises(ApiError) as exc:
            await client.create_entry({"id": 101})

        assert exc.value.status == 422

    async def test_rate_limit_retried(self, client, fake, sleep):
        fake.FAILURES["rate_limit_every"] = 2

        await client.list_categories()  # Request 1
        await client.create_entry({"product_code": "ML86"})  # Request 2 is 429, 3 succeeds

        sleep.assert_awaited_once_with(15.0)
        assert fake.SAVED == [{"product_code": "ML86"}]
        assert client.calls == 3

    async def test_session_expiry(self, client, fake, sleep):
        fake.FAILURES["expire_after"] = 1

        await client.list_categories()
        with pytest.raises(Unauthorized):
            await client.list_entries(1)
        sleep.assert_not_awaited()

    async def test_missing_token(self, server, sleep):
        client = CatalogClient(
            CatalogConfig(base_url=server, xsrf_token_env=None, cookie="c"), sleep=sleep
        )

        with pytest.raises(Unauthorized):
            await client.list_categories()

    async def test_create_from_catalog(self, client, fake, config):
        pipeline = CatalogPipeline(config, client)

        groups = await pipeline.collect_groups()
        stats = await pipeline.create_entries(groups)

        assert [g.descriptor.product for g in groups] == [
            "Telkomsel 10.000",
            "Indosat 5.000",
            "Mobile Legends 86 Diamonds",
        ]
        assert groups[2].descriptor.brand == "MOBILE LEGENDS"
        assert (stats.total, stats.success, stats.errors) == (3, 3, 0)
        telkomsel = [e for e in fake.SAVED if e["product"] == "Telkomsel 10.000"]
        # Beta Pulsa demands buyer verification and is swapped for Gamma Store
        assert [(e["code"], e["seller_sku_id"]) for e in telkomsel] == [
            ("TSEL10", "s-1"),
            ("TSEL10B1", "s-3"),
        ]
        assert len(fake.SAVED) == 4

    async def test_unset_rows_only(self, client, config):
        config.pipeline.row_selection = "unset"

        groups = await CatalogPipeline(config, client).collect_groups()

        # Indosat already has a code
        assert [g.descriptor.product for g in groups] == [
            "Telkomsel 10.000",
            "Mobile Legends 86 Diamonds",
        ]

    async def test_delete_all(self, client, fake, config):
        stats = await CatalogPipeline(config, client).delete_all()

        assert (stats.total, stats.success, stats.errors) == (4, 4, 0)
        assert fake.FAKE_ROWS[1] == []
        assert fake.FAKE_ROWS[2] == []
        assert len(fake.FAKE_ROWS[3]) == 1  # Malaysia TOPUP is skipped
