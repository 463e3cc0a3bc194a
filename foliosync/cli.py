import json
import os
from typing import Optional

import requests
import typer

app = typer.Typer(help="foliosync: remote folders -> catalogue -> gallery")


def _dump(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _scheduler():
    from worker.app.dependencies.services import build_scheduler

    return build_scheduler()


def _remote_step(url: str, token: str, timeout: float):
    from worker.app.models import ChunkResult

    headers = {"Authorization": f"Bearer {token}"} if token else {}

    def step(chunk: int) -> ChunkResult:
        r = requests.post(
            f"{url.rstrip('/')}/sync", json={"chunk": chunk}, headers=headers, timeout=timeout
        )
        if r.status_code != 200:
            raise requests.HTTPError(
                f"worker returned {r.status_code}: {r.text[:200]}", response=r
            )
        return ChunkResult.model_validate(r.json())

    return step


def _remote_start(url: str, timeout: float, force: bool) -> Optional[int]:
    """Chunk to start from per the worker's /status; None when no sync is due."""
    r = requests.get(f"{url.rstrip('/')}/status", timeout=timeout)
    if r.status_code != 200:
        raise requests.HTTPError(
            f"worker /status returned {r.status_code}: {r.text[:200]}", response=r
        )
    data = r.json() or {}
    if not force and not data.get("sync_due", True):
        return None
    meta = data.get("meta") or {}
    return meta.get("nextChunk", 0) if meta.get("status") == "partial" else 0


@app.command()
def version():
    """Show version."""
    import importlib.metadata as md

    print(md.version("folio-sync"))


@app.command()
def chunk(
    chunk: Optional[int] = typer.Option(
        None, "--chunk", "-c", min=0, help="Project index; default resumes from meta"
    ),
):
    """Run exactly one scheduler step in-process."""
    from worker.app.config import ConfigError
    from worker.app.services.dropbox_client import DropboxError

    try:
        result = _scheduler().run_chunk(chunk)
    except (ConfigError, DropboxError) as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1)
    _dump(result.model_dump(mode="json", by_alias=True))


@app.command()
def sync(
    force: bool = typer.Option(False, "--force", help="Run even if no sync is due"),
    max_chunks: int = typer.Option(50, "--max-chunks", min=1, help="Safety cap"),
    url: Optional[str] = typer.Option(
        None, "--url", help="Drive a running worker instead of running in-process"
    ),
    timeout: float = typer.Option(60.0, "--timeout", help="HTTP timeout per chunk (remote)"),
):
    """Loop chunks until no project is left."""
    from worker.app.config import ConfigError
    from worker.app.services.dropbox_client import DropboxError
    from worker.app.services.scheduler import drive_chunks

    try:
        if url:
            token = os.getenv("WORKER_AUTH_TOKEN", "")
            start = _remote_start(url, timeout, force)
            summary = None
            if start is not None:
                summary = drive_chunks(
                    _remote_step(url, token, timeout), start=start, max_chunks=max_chunks
                )
        else:
            summary = _scheduler().run_campaign(force=force, max_chunks=max_chunks)
    except (ConfigError, DropboxError, requests.RequestException) as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1)

    if summary is None:
        print("sync not due; use --force to run anyway")
        return
    for r in summary.results:
        print(
            f"chunk {r.chunk:>3} {r.project or '-':<24} created={r.created} "
            f"updated={r.updated} deleted={r.deleted_stale} failures={len(r.failures)}"
            + (" (budget)" if r.budget_exhausted else "")
        )
    _dump(
        {
            "chunks": len(summary.results),
            "stop_reason": summary.stop_reason,
            "created": summary.created,
            "updated": summary.updated,
            "deleted": summary.deleted,
            "failures": summary.failures,
        }
    )
    if summary.stop_reason != "complete":
        raise typer.Exit(code=2)


@app.command()
def materialize(
    limit: Optional[int] = typer.Option(None, "--limit", min=1),
):
    """One materialization pass over rows missing URLs or dimensions."""
    from worker.app.config import ConfigError, settings
    from worker.app.dependencies.services import build_materializer
    from worker.app.utils.budget import TimeBudget

    try:
        settings.require_sync()
    except ConfigError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1)
    m = build_materializer()
    budget = TimeBudget(settings.SYNC_TIME_BUDGET_MS, op_timeout_ms=settings.HTTP_TIMEOUT_MS)
    report = m.run(budget, limit=limit, count_remaining=True)
    _dump(
        {
            "strategy": m.strategy,
            "processed": report.processed,
            "materialized": report.materialized,
            "measured": report.measured,
            "estimated": report.estimated,
            "remaining": report.remaining,
            "failures": [f.model_dump(by_alias=True) for f in report.failures],
        }
    )


@app.command()
def status():
    """Print sync meta and catalogue counts."""
    from worker.app.config import ConfigError, settings
    from worker.app.dependencies.services import build_store
    from worker.app.services.supabase_client import SupabaseError

    try:
        settings.require_read()
        store = build_store()
        meta = store.get_meta()
        counts = store.counts()
    except (ConfigError, SupabaseError) as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1)
    _dump(
        {
            "meta": meta.model_dump(mode="json", by_alias=True) if meta else None,
            "counts": counts,
        }
    )


if __name__ == "__main__":
    app()
