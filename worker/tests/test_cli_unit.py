import json
from unittest.mock import Mock, patch

from typer.testing import CliRunner

from foliosync.cli import app
from worker.app.models import ChunkResult
from worker.app.services.dropbox_client import DropboxError
from worker.app.services.scheduler import CampaignSummary

runner = CliRunner()


def _http(payload, status=200):
    r = Mock()
    r.status_code = status
    r.json.return_value = payload
    r.text = json.dumps(payload)
    return r


class TestChunkCommand:
    @patch("worker.app.dependencies.services.build_scheduler")
    def test_prints_result(self, mock_build):
        mock_build.return_value.run_chunk.return_value = ChunkResult(
            chunk=2, project="Gamma", total_chunks=3, created=4, status="complete"
        )
        result = runner.invoke(app, ["chunk", "--chunk", "2"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["project"] == "Gamma"
        assert data["totalChunks"] == 3
        mock_build.return_value.run_chunk.assert_called_once_with(2)

    @patch("worker.app.dependencies.services.build_scheduler")
    def test_root_failure_exits_1(self, mock_build):
        mock_build.return_value.run_chunk.side_effect = DropboxError("root gone")
        result = runner.invoke(app, ["chunk"])
        assert result.exit_code == 1


class TestSyncCommand:
    @patch("worker.app.dependencies.services.build_scheduler")
    def test_not_due(self, mock_build):
        mock_build.return_value.run_campaign.return_value = None
        result = runner.invoke(app, ["sync"])
        assert result.exit_code == 0
        assert "not due" in result.stdout

    @patch("worker.app.dependencies.services.build_scheduler")
    def test_stuck_campaign_exits_2(self, mock_build):
        stuck = ChunkResult(chunk=0, total_chunks=2, has_more_chunks=True, next_chunk=0, budget_exhausted=True)
        mock_build.return_value.run_campaign.return_value = CampaignSummary(results=[stuck] * 3, stop_reason="stuck")
        result = runner.invoke(app, ["sync", "--force"])
        assert result.exit_code == 2
        mock_build.return_value.run_campaign.assert_called_once_with(force=True, max_chunks=50)

    @patch("foliosync.cli.requests.get")
    @patch("foliosync.cli.requests.post")
    def test_remote_drive(self, mock_post, mock_get, monkeypatch):
        """--url loops POST /sync until the worker reports no more chunks"""
        monkeypatch.setenv("WORKER_AUTH_TOKEN", "tok")
        mock_get.return_value = _http({"sync_due": True, "meta": None})
        mock_post.side_effect = [
            _http({"chunk": 0, "totalChunks": 2, "hasMoreChunks": True, "nextChunk": 1, "created": 2}),
            _http({"chunk": 1, "totalChunks": 2, "hasMoreChunks": False, "nextChunk": None, "status": "complete"}),
        ]
        result = runner.invoke(app, ["sync", "--url", "http://worker.test/"])
        assert result.exit_code == 0
        assert [c.kwargs["json"] for c in mock_post.call_args_list] == [{"chunk": 0}, {"chunk": 1}]
        assert mock_post.call_args.args[0] == "http://worker.test/sync"
        assert mock_post.call_args.kwargs["headers"] == {"Authorization": "Bearer tok"}

    @patch("foliosync.cli.requests.get")
    @patch("foliosync.cli.requests.post")
    def test_remote_error_exits_1(self, mock_post, mock_get):
        mock_get.return_value = _http({"sync_due": True, "meta": None})
        mock_post.return_value = _http({"ok": False, "error": "unauthorized"}, status=401)
        result = runner.invoke(app, ["sync", "--url", "http://worker.test"])
        assert result.exit_code == 1

    @patch("foliosync.cli.requests.get")
    @patch("foliosync.cli.requests.post")
    def test_remote_resumes_partial_campaign(self, mock_post, mock_get):
        """--url starts from the worker's saved nextChunk"""
        mock_get.return_value = _http({"sync_due": True, "meta": {"status": "partial", "nextChunk": 2}})
        mock_post.return_value = _http({"chunk": 2, "totalChunks": 3, "hasMoreChunks": False, "status": "complete"})
        result = runner.invoke(app, ["sync", "--url", "http://worker.test"])
        assert result.exit_code == 0
        assert mock_get.call_args.args[0] == "http://worker.test/status"
        assert [c.kwargs["json"] for c in mock_post.call_args_list] == [{"chunk": 2}]

    @patch("foliosync.cli.requests.get")
    @patch("foliosync.cli.requests.post")
    def test_remote_not_due_unless_forced(self, mock_post, mock_get):
        mock_get.return_value = _http({"sync_due": False, "meta": {"status": "complete", "nextChunk": 0}})
        result = runner.invoke(app, ["sync", "--url", "http://worker.test"])
        assert result.exit_code == 0
        assert "not due" in result.stdout
        mock_post.assert_not_called()

        mock_post.return_value = _http({"chunk": 0, "totalChunks": 1, "hasMoreChunks": False, "status": "complete"})
        forced = runner.invoke(app, ["sync", "--url", "http://worker.test", "--force"])
        assert forced.exit_code == 0
        assert [c.kwargs["json"] for c in mock_post.call_args_list] == [{"chunk": 0}]
