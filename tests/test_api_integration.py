# ========================
# tests/test_api_integration.py
# ========================

import unittest
import tempfile
import os
import sys
from decimal import Decimal
from unittest import mock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi.testclient import TestClient

from api_server import create_app
from src.pipeline import ConcurrentRunError, build_orchestrators
from tests.support import make_config, wait_for, write_scenario_sources


class TestAPIIntegration(unittest.TestCase):
    """
    Integration tests for the API server endpoints, served in-process.
    """

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config = make_config(self.temp_dir.name)
        write_scenario_sources(self.config)
        self.orchestrators = build_orchestrators(self.config)
        self.pipeline = self.config.PIPELINE_NAME
        app = create_app(self.config, orchestrators=self.orchestrators, enable_scheduler=False)
        self.client = TestClient(app)
        self.client.__enter__()

    def tearDown(self):
        self.client.__exit__(None, None, None)
        self.temp_dir.cleanup()

    def _run_pipeline(self):
        response = self.client.post(f"/pipelines/{self.pipeline}/runs")
        self.assertEqual(response.status_code, 202)
        run_id = response.json()["run_id"]
        wait_for(lambda: self.client.get(f"/runs/{run_id}").json()["state"] in ("succeeded", "failed"))
        return self.client.get(f"/runs/{run_id}").json()

    def test_health_endpoint(self):
        """Test the health check endpoint."""
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)

        data = response.json()
        self.assertEqual(data["status"], "healthy")
        self.assertIn("timestamp", data)
        self.assertEqual(data["active_runs"], {})
        self.assertIsInstance(data["system"], dict)

    def test_root_endpoint(self):
        """Test the root API endpoint."""
        data = self.client.get("/").json()
        self.assertIn("endpoints", data)
        self.assertEqual(data["pipelines"], [self.pipeline])

    def test_trigger_and_query(self):
        """Test running the pipeline via API and reading the summary."""
        run = self._run_pipeline()
        self.assertEqual(run["state"], "succeeded")
        self.assertEqual(run["trigger"], "manual")

        response = self.client.get(f"/pipelines/{self.pipeline}/client-investments")
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["count"], 3)
        self.assertIsNotNone(data["published_at"])
        totals = {r["client_id"]: Decimal(r["total_investment"]) for r in data["client_investments"]}
        self.assertEqual(totals["103"], Decimal("180000"))

        response = self.client.get(
            f"/pipelines/{self.pipeline}/client-investments", params={"region": "eu"}
        )
        self.assertEqual([r["client_id"] for r in response.json()["client_investments"]], ["102"])

    def test_query_before_first_run(self):
        """Querying an unpopulated summary is a 404, not an empty result."""
        response = self.client.get(f"/pipelines/{self.pipeline}/client-investments")
        self.assertEqual(response.status_code, 404)

    def test_unknown_pipeline(self):
        self.assertEqual(self.client.post("/pipelines/nope/runs").status_code, 404)
        self.assertEqual(self.client.get("/pipelines/nope/client-investments").status_code, 404)

    def test_concurrent_run_conflict(self):
        orchestrator = self.orchestrators[self.pipeline]
        with mock.patch.object(orchestrator, 'trigger', side_effect=ConcurrentRunError(self.pipeline, 'run-1')):
            response = self.client.post(f"/pipelines/{self.pipeline}/runs")

        self.assertEqual(response.status_code, 409)
        self.assertIn("run-1", response.json()["detail"])

    def test_list_and_get_runs(self):
        run = self._run_pipeline()

        data = self.client.get("/runs", params={"pipeline": self.pipeline, "status": "succeeded"}).json()
        self.assertEqual([r["run_id"] for r in data["runs"]], [run["run_id"]])
        self.assertEqual(self.client.get("/runs", params={"status": "failed"}).json()["filtered_count"], 0)
        self.assertEqual(self.client.get("/runs/does-not-exist").status_code, 404)

    def test_cancel_finished_run(self):
        run = self._run_pipeline()
        response = self.client.post(f"/runs/{run['run_id']}/cancel")
        self.assertEqual(response.status_code, 400)

    def test_schedule_endpoint(self):
        data = self.client.get("/schedule").json()
        self.assertFalse(data["running"])


if __name__ == '__main__':
    unittest.main()
