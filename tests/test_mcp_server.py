import unittest
from pathlib import Path
from unittest import mock

from hymnsync.config import Settings
from hymnsync.mcp_server import _handle_request


class TestMcpServer(unittest.TestCase):
    def setUp(self):
        self.root_dir = Path(__file__).resolve().parents[1]
        self.score_path = "assets/test_data/hymn-two-verses.mei"
        self.intro_score_path = "assets/test_data/hymn-intro-brackets.mei"
        self.settings = Settings()

    def _call_tool(self, name, arguments):
        request = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "tools/call",
            "params": {"name": name, "arguments": arguments},
        }
        response = _handle_request(request, self.settings)
        self.assertIn("result", response)
        return response["result"]

    def test_initialize(self):
        request = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "initialize",
            "params": {"protocolVersion": "1.0"},
        }
        response = _handle_request(request, self.settings)
        self.assertIn("result", response)
        result = response["result"]
        self.assertEqual(result["serverInfo"]["name"], "hymnsync-mcp")
        self.assertIn("capabilities", result)

    def test_tools_list(self):
        request = {"jsonrpc": "2.0", "id": 1, "method": "tools/list", "params": {}}
        response = _handle_request(request, self.settings)
        self.assertIn("result", response)
        names = {tool["name"] for tool in response["result"]["tools"]}
        self.assertEqual(names, {"load_score", "resolve_parts", "extract_introduction", "align_midi"})

    def test_load_score(self):
        with mock.patch("hymnsync.mcp.handlers.load_score") as mock_load:
            mock_load.return_value.to_dict.return_value = {"numChordPositions": 7}
            result = self._call_tool(
                "load_score",
                {"file_path": self.score_path, "expand_intro": True, "include_mei": True},
            )
            self.assertEqual(result, {"numChordPositions": 7})
            args, kwargs = mock_load.call_args
            self.assertTrue(isinstance(args[0], Path))
            self.assertTrue(kwargs["expand_intro"])
            self.assertIs(kwargs["settings"], self.settings)
            mock_load.return_value.to_dict.assert_called_once_with(include_mei=True)

    def test_resolve_parts(self):
        result = self._call_tool("resolve_parts", {"file_path": self.score_path})
        self.assertEqual(result["staffNumbers"], [1, 2])
        self.assertTrue(result["hasMelodyInfo"])
        self.assertEqual(result["melodyNoteIds"], [f"n{i}" for i in range(1, 8)])

    def test_align_midi(self):
        result = self._call_tool("align_midi", {"file_path": self.score_path})
        self.assertEqual(result["midiType"], "minimal")
        self.assertEqual(result["source"], "engine")
        self.assertEqual(len(result["expandedChordPositions"]), 14)

    def test_extract_introduction(self):
        result = self._call_tool("extract_introduction", {"file_path": self.intro_score_path})
        self.assertTrue(result["extracted"])
        self.assertIn('type="introduction"', result["mei"])

    def test_unknown_tool_is_reported_in_result(self):
        result = self._call_tool("synthesize", {})
        self.assertEqual(result["error"]["type"], "ValueError")

    def test_paths_outside_project_are_rejected(self):
        result = self._call_tool("load_score", {"file_path": "../outside.mei"})
        self.assertEqual(result["error"]["type"], "ValueError")

    def test_unsupported_file_type_is_rejected(self):
        result = self._call_tool("load_score", {"file_path": "pyproject.toml"})
        self.assertEqual(result["error"]["type"], "ValueError")

    def test_missing_score_is_reported(self):
        result = self._call_tool("resolve_parts", {"file_path": "assets/test_data/missing.mei"})
        self.assertEqual(result["error"]["type"], "FileNotFoundError")

    def test_paths_resolve_against_configured_score_root(self):
        self.settings = Settings(score_root=str(self.root_dir / "assets" / "test_data"))
        result = self._call_tool("resolve_parts", {"file_path": "hymn-two-verses.mei"})
        self.assertEqual(result["staffNumbers"], [1, 2])

    def test_ping(self):
        response = _handle_request({"jsonrpc": "2.0", "id": 2, "method": "ping"}, self.settings)
        self.assertEqual(response["result"], {})

    def test_unknown_method(self):
        request = {"jsonrpc": "2.0", "id": 3, "method": "resources/list", "params": {}}
        response = _handle_request(request, self.settings)
        self.assertEqual(response["error"]["code"], -32601)

    def test_notification_without_id_gets_no_response(self):
        request = {"jsonrpc": "2.0", "method": "notifications/initialized"}
        self.assertIsNone(_handle_request(request, self.settings))


if __name__ == "__main__":
    unittest.main(verbosity=2)
