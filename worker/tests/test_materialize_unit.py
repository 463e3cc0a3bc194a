from datetime import datetime, timedelta, timezone

import pytest

from fakes import FakeBlobStore, FakeCatalogue, make_png, make_webp_vp8
from conftest import make_settings
from worker.app.schema.catalogue_schema import CatalogueEntry
from worker.app.services.materialize import (
    AssetMaterializer,
    content_type_for,
    estimate_aspect_ratio,
    needs_asset,
    needs_dimensions,
)

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def entry(filename, **kw):
    stem, ext = filename.rsplit(".", 1)
    values = dict(
        id=f"Alpha-Figma-{stem}-{ext}",
        name=stem,
        project="Alpha",
        tool="Figma",
        time_bucket="2024-Q2",
        remote_path=f"/portfolio/alpha/figma/{filename}".lower(),
        extension=ext,
        size_bytes=1000,
    )
    values.update(kw)
    return CatalogueEntry(**values)


def build(dropbox, catalogue, strategy="mirror", blobs=None, **cfg_kw):
    cfg = make_settings(ASSET_STRATEGY=strategy, **cfg_kw)
    blobs = blobs if blobs is not None else catalogue.client
    return AssetMaterializer(dropbox, catalogue, blobs, cfg, now=lambda: NOW)


class TestPolicy:
    def test_estimate_by_size(self):
        assert estimate_aspect_ratio(3 * 1024 * 1024) == pytest.approx(16 / 9)
        assert estimate_aspect_ratio(100 * 1024) == 1.0
        assert estimate_aspect_ratio(500 * 1024) == pytest.approx(4 / 3)
        assert estimate_aspect_ratio(None) == pytest.approx(4 / 3)

    def test_needs_asset(self):
        stale_before = NOW - timedelta(hours=3)
        assert needs_asset(entry("a.png"), "mirror", stale_before=stale_before)
        durable = entry("a.png", asset_url="https://x", asset_url_kind="durable")
        assert not needs_asset(durable, "mirror", stale_before=stale_before)
        assert not needs_asset(durable, "passthrough", stale_before=stale_before)
        fresh = entry(
            "a.png",
            asset_url="https://t",
            asset_url_kind="temporary",
            asset_url_fetched_at=NOW - timedelta(hours=1),
        )
        old = fresh.model_copy(update={"asset_url_fetched_at": NOW - timedelta(hours=4)})
        assert needs_asset(fresh, "mirror", stale_before=stale_before)
        assert not needs_asset(fresh, "passthrough", stale_before=stale_before)
        assert needs_asset(old, "passthrough", stale_before=stale_before)

    def test_needs_dimensions_respects_retry_window(self):
        retry_before = NOW - timedelta(hours=24)
        assert needs_dimensions(entry("a.png"), retry_before=retry_before)
        recent = entry("a.png", dimensions_attempted_at=NOW - timedelta(hours=1))
        assert not needs_dimensions(recent, retry_before=retry_before)
        long_ago = entry("a.png", dimensions_attempted_at=NOW - timedelta(hours=30))
        assert needs_dimensions(long_ago, retry_before=retry_before)
        assert not needs_dimensions(entry("a.png", width=1, height=1), retry_before=retry_before)

    def test_content_types(self):
        assert content_type_for("png") == "image/png"
        assert content_type_for("AVIF") == "image/avif"
        assert content_type_for("weird") == "application/octet-stream"


class TestMirror:
    def test_mirrors_and_measures(self, dropbox_factory):
        """Bytes go to the bucket, the row gets a durable URL and measured dimensions"""
        dbx = dropbox_factory({"Alpha": {"Figma": {"hero.png": make_png(800, 600)}}})
        cat = FakeCatalogue([entry("hero.png")])
        report = build(dbx, cat).run()

        row = cat.entry("Alpha-Figma-hero-png")
        assert row.asset_url == "https://db.supabase.test/storage/v1/object/public/portfolio/alpha/figma/hero.png"
        assert row.asset_url_kind == "durable"
        assert row.storage_path == "alpha/figma/hero.png"
        assert (row.width, row.height) == (800, 600)
        assert row.aspect_ratio_measured == pytest.approx(4 / 3)
        assert row.aspect_ratio_estimated is False
        assert row.dimensions_calculated_at == NOW
        assert cat.client.content_types["portfolio/alpha/figma/hero.png"] == "image/png"
        assert (report.materialized, report.measured, report.failures) == (1, 1, [])
        # one download serves both upload and sniffing
        assert len(dbx.downloads) == 1

    def test_durable_rows_are_not_pending(self, dropbox_factory):
        dbx = dropbox_factory({"Alpha": {"Figma": {"hero.png": make_png(8, 6)}}})
        done = entry("hero.png", asset_url="https://x", asset_url_kind="durable", width=8, height=6)
        cat = FakeCatalogue([done])
        report = build(dbx, cat).run()
        assert report.processed == 0
        assert dbx.link_calls == []

    def test_upload_failure_is_reported(self, dropbox_factory):
        dbx = dropbox_factory({"Alpha": {"Figma": {"hero.png": make_png(8, 6)}}})
        cat = FakeCatalogue([entry("hero.png")], blobs=FakeBlobStore(fail_uploads=True))
        report = build(dbx, cat).run()
        assert [f.stage for f in report.failures] == ["upload"]
        row = cat.entry("Alpha-Figma-hero-png")
        assert row.asset_url is None
        # stamped so it moves to the back of the queue
        assert row.dimensions_attempted_at == NOW


class TestPassthrough:
    def test_stores_temporary_link(self, dropbox_factory):
        dbx = dropbox_factory({"Alpha": {"Figma": {"hero.png": make_png(1200, 400)}}})
        cat = FakeCatalogue([entry("hero.png")])
        report = build(dbx, cat, strategy="passthrough", blobs=None).run()

        row = cat.entry("Alpha-Figma-hero-png")
        assert row.asset_url == "https://dl.dropbox.test/portfolio/alpha/figma/hero.png"
        assert row.asset_url_kind == "temporary"
        assert row.asset_url_fetched_at == NOW
        assert (row.width, row.height) == (1200, 400)
        assert cat.client.objects == {}
        assert report.materialized == 1

    def test_refreshes_only_stale_links(self, dropbox_factory):
        """Links older than TTL minus margin are re-minted; fresh ones are left alone"""
        dbx = dropbox_factory(
            {"Alpha": {"Figma": {"old.png": make_png(4, 4), "new.png": make_png(4, 4)}}}
        )
        common = dict(asset_url_kind="temporary", width=4, height=4)
        cat = FakeCatalogue(
            [
                entry("old.png", asset_url="https://stale", asset_url_fetched_at=NOW - timedelta(hours=3, minutes=45), **common),
                entry("new.png", asset_url="https://fresh", asset_url_fetched_at=NOW - timedelta(minutes=10), **common),
            ]
        )
        build(dbx, cat, strategy="passthrough").run()
        assert cat.entry("Alpha-Figma-old-png").asset_url.startswith("https://dl.dropbox.test/")
        assert cat.entry("Alpha-Figma-new-png").asset_url == "https://fresh"
        assert dbx.downloads == []


class TestDimensions:
    def test_unparseable_defers_without_estimate(self, dropbox_factory):
        """Unknown bytes leave dimensions null and stamp the attempt"""
        dbx = dropbox_factory({"Alpha": {"Figma": {"odd.png": b"\x89PNG-garbage"}}})
        cat = FakeCatalogue([entry("odd.png")])
        report = build(dbx, cat).run()
        row = cat.entry("Alpha-Figma-odd-png")
        assert row.width is None and row.aspect_ratio_measured is None
        assert row.dimensions_attempted_at == NOW
        assert report.measured == 0 and report.failures == []

    def test_unsupported_webp_gets_flagged_estimate(self, dropbox_factory):
        data = bytearray(make_webp_vp8(100, 100))
        data[12:16] = b"VP8L"
        dbx = dropbox_factory({"Alpha": {"Figma": {"shot.webp": bytes(data)}}})
        cat = FakeCatalogue([entry("shot.webp", size_bytes=3 * 1024 * 1024)])
        report = build(dbx, cat).run()
        row = cat.entry("Alpha-Figma-shot-webp")
        assert row.width is None
        assert row.aspect_ratio_measured == pytest.approx(16 / 9)
        assert row.aspect_ratio_estimated is True
        assert report.estimated == 1

    def test_estimate_never_overwrites_prior_ratio(self, dropbox_factory):
        dbx = dropbox_factory({"Alpha": {"Figma": {"shot.avif": b"\x00\x00\x00\x0cftypavif"}}})
        prior = entry(
            "shot.avif",
            asset_url="https://x",
            asset_url_kind="durable",
            aspect_ratio_measured=1.5,
            aspect_ratio_estimated=True,
        )
        cat = FakeCatalogue([prior])
        build(dbx, cat).run()
        assert cat.entry("Alpha-Figma-shot-avif").aspect_ratio_measured == 1.5

    def test_retry_window_skips_recent_attempts(self, dropbox_factory):
        dbx = dropbox_factory({"Alpha": {"Figma": {"odd.png": b"junk"}}})
        row = entry(
            "odd.png",
            asset_url="https://x",
            asset_url_kind="durable",
            dimensions_attempted_at=NOW - timedelta(hours=2),
        )
        cat = FakeCatalogue([row])
        report = build(dbx, cat).run()
        assert report.processed == 0
        assert dbx.downloads == []


class TestFailuresAndBudget:
    def test_link_failure_does_not_sink_siblings(self, dropbox_factory):
        dbx = dropbox_factory(
            {"Alpha": {"Figma": {"a.png": make_png(2, 2), "b.png": make_png(3, 3)}}},
            link_failures=["/Portfolio/Alpha/Figma/a.png"],
        )
        cat = FakeCatalogue([entry("a.png"), entry("b.png")])
        report = build(dbx, cat).run()
        assert [(f.id, f.stage) for f in report.failures] == [("Alpha-Figma-a-png", "link")]
        assert cat.entry("Alpha-Figma-b-png").width == 3

    def test_links_minted_for_the_whole_group(self, dropbox_factory):
        files = {f"{i}.png": make_png(i + 1, 1) for i in range(5)}
        dbx = dropbox_factory({"Alpha": {"Figma": files}})
        cat = FakeCatalogue([entry(name) for name in files])
        report = build(dbx, cat, LINK_CONCURRENCY=2).run()
        assert report.materialized == 5
        assert len(dbx.link_calls) == 5

    def test_exhausted_budget_starts_nothing(self, dropbox_factory):
        from worker.app.utils.budget import TimeBudget

        dbx = dropbox_factory({"Alpha": {"Figma": {"a.png": make_png(2, 2)}}})
        cat = FakeCatalogue([entry("a.png")])
        ticks = iter([0.0] + [100.0] * 10)
        report = build(dbx, cat).run(TimeBudget(1000, clock=lambda: next(ticks)))
        assert report.exhausted and report.processed == 0
        assert dbx.link_calls == []

    def test_remaining_count(self, dropbox_factory):
        dbx = dropbox_factory({"Alpha": {"Figma": {f"{i}.png": make_png(2, 2) for i in range(3)}}})
        cat = FakeCatalogue([entry(f"{i}.png") for i in range(3)])
        report = build(dbx, cat).run(limit=2, count_remaining=True)
        assert report.processed == 2
        assert report.remaining == 1


class TestRefreshLinks:
    def test_forces_new_link_and_reports_unknown_ids(self, dropbox_factory):
        dbx = dropbox_factory({"Alpha": {"Figma": {"a.png": make_png(2, 2)}}})
        fresh = entry(
            "a.png",
            asset_url="https://fresh",
            asset_url_kind="temporary",
            asset_url_fetched_at=NOW - timedelta(minutes=5),
            width=2,
            height=2,
        )
        cat = FakeCatalogue([fresh])
        report = build(dbx, cat, strategy="passthrough").refresh_links(["Alpha-Figma-a-png", "nope"])
        assert cat.entry("Alpha-Figma-a-png").asset_url.startswith("https://dl.dropbox.test/")
        assert [(f.id, f.stage) for f in report.failures] == [("nope", "lookup")]

    def test_single_entry_materialize(self, dropbox_factory):
        dbx = dropbox_factory({"Alpha": {"Figma": {"a.png": make_png(30, 10)}}})
        cat = FakeCatalogue([entry("a.png")])
        updated = build(dbx, cat).materialize(cat.entry("Alpha-Figma-a-png"))
        assert updated.width == 30 and updated.has_durable_asset
