import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

from fastapi.testclient import TestClient

# Make sure Python can find the package for imports
import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from pandasai_mcp import exceptions
from pandasai_mcp.app import create_app
from pandasai_mcp.config import Settings

PEOPLE_CSV = b"name,age\nAlice,30\nBob,25\n"
CITIES_CSV = b"city,country,population\nOslo,NO,700000\nLima,PE,10000000\nPune,IN,7000000\n"


class TestHTTPService(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.settings = Settings(UPLOAD_DIR=Path(self.tmp.name), SERVICE_NAME="Test Service", SERVICE_VERSION="0.0.1")
        self.configurator = AsyncMock(side_effect=self._fake_configure)
        self.engine = MagicMock()
        self.engine.analyze = AsyncMock(return_value={"answer": "There are 2 rows."})
        self.app = create_app(app_settings=self.settings, configurator=self.configurator, engine=self.engine)
        self.client = TestClient(self.app, raise_server_exceptions=False)

    def tearDown(self):
        self.client.close()
        self.tmp.cleanup()

    @staticmethod
    async def _fake_configure(config):
        if config.get("provider") == "broken":
            raise exceptions.LLMProviderError("broken", "Provider not recognized or supported.")
        return MagicMock(provider_name=config.get("provider", "openai"), model=config.get("model"))

    def upload(self, name, content):
        return self.client.post("/upload", files={"file": (name, content, "text/csv")})

    def mcp(self, method, params=None):
        return self.client.post("/mcp", json={"method": method, "params": params or {}})

    # --- status / static payloads ---

    def test_status_before_anything(self):
        response = self.client.get("/status")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertFalse(body["data_loaded"])
        self.assertFalse(body["llm_configured"])
        self.assertIsNone(body["dataframe_info"])
        self.assertEqual(body["service"], "Test Service")
        self.assertEqual(body["status"], "running")
        self.assertIn("X-Request-ID", response.headers)

    def test_status_after_upload_and_configuration(self):
        self.upload("people.csv", PEOPLE_CSV)
        self.client.post("/configure-llm", json={"provider": "openai", "model": "gpt-x"})

        body = self.client.get("/status").json()

        self.assertTrue(body["data_loaded"])
        self.assertTrue(body["llm_configured"])
        self.assertEqual(body["dataframe_info"], {"filename": "people.csv", "rows": 2, "columns": 2})

    def test_docs_and_root(self):
        docs = self.client.get("/docs").json()
        self.assertIn("POST /mcp", docs["endpoints"])
        self.assertEqual(set(docs["sse"]["events"]), {"connection", "heartbeat", "status"})
        root = self.client.get("/").json()
        self.assertEqual(root["docs"], "/docs")

    def test_unknown_route(self):
        response = self.client.get("/nowhere")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"error": "Endpoint not found", "path": "/nowhere"})

    # --- upload ---

    def test_upload_returns_counts_and_preview(self):
        response = self.upload("people.csv", PEOPLE_CSV)

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["filename"], "people.csv")
        self.assertEqual(body["rows"], 2)
        self.assertEqual(body["columns"], 2)
        self.assertEqual(body["preview"], [{"name": "Alice", "age": 30}, {"name": "Bob", "age": 25}])
        self.assertEqual(list(Path(self.tmp.name).iterdir()), [])

    def test_preview_is_limited_to_five_rows(self):
        content = b"n\n" + b"".join(f"{i}\n".encode() for i in range(12))
        body = self.upload("many.csv", content).json()
        self.assertEqual(body["rows"], 12)
        self.assertEqual(len(body["preview"]), 5)

    def test_second_upload_replaces_first(self):
        self.upload("people.csv", PEOPLE_CSV)
        self.upload("cities.csv", CITIES_CSV)

        dataset = self.app.state.session_store.dataset
        self.assertEqual(dataset.source_name, "cities.csv")
        self.assertEqual(dataset.row_count, 3)
        self.assertEqual(dataset.column_count, 3)
        self.assertNotIn("name", dataset.columns)

    def test_upload_rejects_unsupported_format(self):
        response = self.upload("notes.txt", b"hello")
        self.assertEqual(response.status_code, 415)
        self.assertIn("notes.txt", response.json()["message"])
        self.assertIsNone(self.app.state.session_store.dataset)

    def test_upload_without_file(self):
        response = self.client.post("/upload")
        self.assertEqual(response.status_code, 400)
        self.assertIn("error", response.json())

    def test_upload_load_failure(self):
        response = self.client.post("/upload", files={"file": ("broken.xlsx", b"not a workbook", "application/octet-stream")})
        self.assertEqual(response.status_code, 500)
        self.assertTrue(response.json()["error"].startswith("Failed to load file: "))
        self.assertEqual(list(Path(self.tmp.name).iterdir()), [])

    def test_upload_size_limit(self):
        settings = Settings(UPLOAD_DIR=Path(self.tmp.name), MAX_UPLOAD_FILE_SIZE_BYTES=10)
        client = TestClient(create_app(app_settings=settings, configurator=self.configurator, engine=self.engine))
        response = client.post("/upload", files={"file": ("people.csv", PEOPLE_CSV, "text/csv")})
        self.assertEqual(response.status_code, 413)

    # --- analyze / configure ---

    def test_analyze_requires_query(self):
        response = self.client.post("/analyze", json={})
        self.assertEqual(response.status_code, 400)

    def test_analyze_without_backend(self):
        self.upload("people.csv", PEOPLE_CSV)
        response = self.client.post("/analyze", json={"query": "count rows"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["kind"], "NoBackendConfigured")
        self.assertIn("No LLM backend configured", response.json()["message"])

    def test_analyze_without_dataset(self):
        self.client.post("/configure-llm", json={"model": "gpt-x"})
        response = self.client.post("/analyze", json={"query": "count rows"})
        self.assertEqual(response.json()["kind"], "NoDatasetLoaded")

    def test_analyze_with_inline_backend_config(self):
        self.upload("people.csv", PEOPLE_CSV)
        response = self.client.post("/analyze", json={"query": "count rows", "backend_config": {"model": "gpt-inline"}})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"content": [{"type": "text", "text": "There are 2 rows."}]})
        self.assertEqual(self.app.state.session_store.backend.model, "gpt-inline")

    def test_analyze_engine_failure(self):
        self.engine.analyze.side_effect = RuntimeError("upstream 503")
        self.upload("people.csv", PEOPLE_CSV)
        self.client.post("/configure-llm", json={"model": "gpt-x"})

        response = self.client.post("/analyze", json={"query": "count rows"})

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["error"], "Analysis failed: upstream 503")

    def test_configure_llm_confirms_model(self):
        response = self.client.post("/configure-llm", json={"provider": "openai", "model": "X"})
        self.assertEqual(response.status_code, 200)
        self.assertIn("X", response.json()["content"][0]["text"])

    def test_configure_backend_alias(self):
        response = self.client.post("/configure-backend", json={"model": "Y"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.app.state.session_store.backend.model, "Y")

    def test_configure_llm_failure(self):
        response = self.client.post("/configure-llm", json={"provider": "broken"})
        self.assertEqual(response.status_code, 500)
        self.assertTrue(response.json()["error"].startswith("Backend configuration failed: "))

    # --- MCP ---

    def test_mcp_unsupported_method(self):
        response = self.mcp("resources/list")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], -1)
        self.assertIn("resources/list", response.json()["error"]["message"])

    def test_mcp_invalid_body(self):
        response = self.client.post("/mcp", content=b"not json", headers={"Content-Type": "application/json"})
        self.assertEqual(response.status_code, 400)
        self.assertIn("error", response.json())

    def test_mcp_initialize_and_list(self):
        init = self.mcp("initialize", {"protocolVersion": "2024-11-05"})
        self.assertEqual(init.status_code, 200)
        self.assertEqual(init.json()["result"]["serverInfo"]["name"], "Test Service")

        tools = self.mcp("tools/list").json()["result"]["tools"]
        self.assertEqual({tool["name"] for tool in tools}, {"analyze_data", "configure_llm"})

    def test_mcp_unknown_tool(self):
        response = self.mcp("tools/call", {"name": "teleport", "arguments": {}})
        self.assertEqual(response.status_code, 400)
        self.assertIn("teleport", response.json()["error"]["message"])

    def test_mcp_full_flow(self):
        self.upload("people.csv", PEOPLE_CSV)
        self.assertEqual(self.mcp("notifications/initialized").json(), {"result": {"success": True}})
        configured = self.mcp("tools/call", {"name": "configure_llm", "arguments": {"model": "X"}})
        self.assertEqual(configured.status_code, 200)

        response = self.mcp("tools/call", {"name": "analyze_data", "arguments": {"query": "count rows"}})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["result"]["content"][0]["text"], "There are 2 rows.")
        dataset, query, backend = self.engine.analyze.await_args.args
        self.assertEqual(dataset.row_count, 2)
        self.assertEqual(query, "count rows")
        self.assertEqual(backend.model, "X")

    # --- generic failures ---

    def test_unexpected_error_is_500(self):
        self.app.state.session_store.snapshot = MagicMock(side_effect=RuntimeError("snapshot broke"))
        response = self.client.get("/status")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"error": "Internal server error", "message": "snapshot broke"})


if __name__ == '__main__':
    unittest.main()
