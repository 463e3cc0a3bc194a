from datetime import datetime, timezone
from unittest.mock import Mock

from conftest import make_settings
from worker.app.schema.catalogue_schema import SyncMeta
from worker.app.services.catalogue_store import (
    PAGE_SIZE,
    CatalogueStore,
    pending_filter,
    pg_timestamp,
)

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
RETRY = datetime(2025, 2, 28, 12, 0, tzinfo=timezone.utc)
STALE = datetime(2025, 3, 1, 8, 30, tzinfo=timezone.utc)


def _row(i, project="Alpha"):
    return {
        "id": f"{project}-T-{i}-png",
        "name": str(i),
        "project": project,
        "tool": "T",
        "time_bucket": "2024-Q2",
        "remote_path": f"/portfolio/{project.lower()}/t/{i}.png",
        "extension": "png",
    }


class TestPendingFilter:
    def test_mirror_treats_temporary_as_pending(self):
        expr = pending_filter("mirror", stale_before=STALE, retry_before=RETRY)
        assert expr.startswith("(asset_url.is.null,asset_url_kind.is.null,asset_url_kind.eq.temporary,")
        assert "and(width.is.null,dimensions_attempted_at.is.null)" in expr
        assert "and(width.is.null,dimensions_attempted_at.lt.2025-02-28T12:00:00Z)" in expr

    def test_passthrough_only_stale_links(self):
        expr = pending_filter("passthrough", stale_before=STALE, retry_before=RETRY)
        assert (
            "and(asset_url_kind.eq.temporary,or(asset_url_fetched_at.is.null,"
            "asset_url_fetched_at.lt.2025-03-01T08:30:00Z))"
        ) in expr
        assert ",asset_url_kind.eq.temporary," not in expr

    def test_timestamp_normalised_to_utc(self):
        local = datetime(2025, 3, 1, 12, 0, 30, 999, tzinfo=timezone.utc)
        assert pg_timestamp(local) == "2025-03-01T12:00:30Z"


class TestCatalogueStore:
    def test_rows_for_project_pages_through(self):
        """Reads keep paging until a short page comes back"""
        client = Mock()
        client.select.side_effect = [
            [_row(i) for i in range(PAGE_SIZE)],
            [_row(PAGE_SIZE)],
        ]
        store = CatalogueStore(client, make_settings())
        entries = store.rows_for_project("Alpha")
        assert len(entries) == PAGE_SIZE + 1
        offsets = [c.kwargs["offset"] for c in client.select.call_args_list]
        assert offsets == [0, PAGE_SIZE]
        assert client.select.call_args.kwargs["filters"] == {"project": "eq.Alpha"}

    def test_pending_entries_query(self):
        client = Mock()
        client.select.return_value = [_row(1)]
        store = CatalogueStore(client, make_settings())
        out = store.pending_entries(
            "mirror", stale_before=STALE, retry_before=RETRY, limit=5, project="Alpha"
        )
        assert [e.id for e in out] == ["Alpha-T-1-png"]
        kw = client.select.call_args.kwargs
        assert kw["limit"] == 5
        assert kw["order"] == "dimensions_attempted_at.asc.nullsfirst,id.asc"
        assert kw["filters"]["project"] == "eq.Alpha"
        assert kw["filters"]["or"].startswith("(asset_url.is.null")

    def test_page_orders_for_stable_batches(self):
        client = Mock()
        client.count.return_value = 3
        client.select.return_value = [_row(1), _row(2)]
        entries, total = CatalogueStore(client, make_settings()).page(0, 2)
        assert total == 3 and len(entries) == 2
        assert client.select.call_args.kwargs["order"] == "project.asc,tool.asc,name.asc,id.asc"

    def test_empty_deletes_skip_the_network(self):
        client = Mock()
        store = CatalogueStore(client, make_settings())
        assert store.delete_ids([]) == 0
        assert store.delete_projects([]) == 0
        client.delete.assert_not_called()

    def test_delete_projects_filter(self):
        client = Mock()
        client.delete.return_value = 4
        n = CatalogueStore(client, make_settings()).delete_projects(["Old", "Gone", "Old"])
        assert n == 4
        assert client.delete.call_args.kwargs["filters"] == {"project": 'in.("Gone","Old")'}

    def test_update_entry_is_scoped_to_id(self):
        client = Mock()
        CatalogueStore(client, make_settings()).update_entry("a-b", {"width": 3})
        args, kwargs = client.update.call_args
        assert args == ("portfolio_images", {"width": 3})
        assert kwargs["filters"] == {"id": "eq.a-b"}


class TestMeta:
    def test_save_meta_upserts_singleton(self):
        client = Mock()
        store = CatalogueStore(client, make_settings())
        store.save_meta(SyncMeta(last_sync_at=NOW, status="partial", next_chunk=2, total_projects=5))
        args, kwargs = client.upsert.call_args
        assert args[0] == "portfolio_meta"
        row = args[1][0]
        assert row["id"] == 1
        assert row["next_chunk"] == 2 and row["status"] == "partial"
        assert kwargs["on_conflict"] == "id"

    def test_get_meta_missing(self):
        client = Mock()
        client.select.return_value = []
        assert CatalogueStore(client, make_settings()).get_meta() is None

    def test_get_meta(self):
        client = Mock()
        client.select.return_value = [
            {"id": 1, "last_sync_at": "2025-03-01T12:00:00+00:00", "projects_synced": 2,
             "total_projects": 5, "status": "partial", "next_chunk": 2}
        ]
        meta = CatalogueStore(client, make_settings()).get_meta()
        assert meta.next_chunk == 2
        assert meta.last_sync_at == NOW
