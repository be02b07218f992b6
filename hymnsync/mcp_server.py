"""Stdio JSON-RPC server exposing the score tools over MCP."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from hymnsync import __version__
from hymnsync.config import Settings
from hymnsync.mcp.tools import call_tool, list_tools
from hymnsync.mcp.logging_utils import (
    clear_log_context,
    ensure_timestamped_handlers,
    get_logger,
    set_log_context,
    summarize_payload,
)

logger = get_logger(__name__)

METHOD_NOT_FOUND = -32601
PARSE_ERROR = -32700
INTERNAL_ERROR = -32000


def _error_response(request_id: Optional[Any], code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def _result_response(request_id: Optional[Any], result: Any) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def _tool_error(message: str, error_type: str = "ValueError") -> Dict[str, Any]:
    return {"error": {"message": message, "type": error_type}}


def _initialize(params: Dict[str, Any], settings: Settings, request_id: Any) -> Dict[str, Any]:
    return {
        "protocolVersion": params.get("protocolVersion", "1.0"),
        "serverInfo": {"name": "hymnsync-mcp", "version": __version__},
        "capabilities": {"tools": {}},
    }


def _ping(params: Dict[str, Any], settings: Settings, request_id: Any) -> Dict[str, Any]:
    return {}


def _tools_list(params: Dict[str, Any], settings: Settings, request_id: Any) -> Dict[str, Any]:
    return {"tools": list_tools()}


def _tools_call(params: Dict[str, Any], settings: Settings, request_id: Any) -> Any:
    """Run one tool; failures are reported inside the result, not as RPC errors."""
    name = params.get("name")
    if not name:
        return _tool_error("name is required")
    arguments = params.get("arguments") or {}
    if not isinstance(arguments, dict):
        return _tool_error("arguments must be an object")
    set_log_context(score_id=arguments.get("file_path"), request_id=request_id)
    try:
        return call_tool(name, arguments, settings)
    except Exception as exc:
        logger.warning("tool_failed name=%s error_type=%s error=%s", name, exc.__class__.__name__, exc)
        return _tool_error(str(exc), exc.__class__.__name__)
    finally:
        clear_log_context()


METHODS: Dict[str, Callable[[Dict[str, Any], Settings, Any], Any]] = {
    "initialize": _initialize,
    "ping": _ping,
    "tools/list": _tools_list,
    "tools/call": _tools_call,
}


def _handle_request(request: Dict[str, Any], settings: Settings) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    request_id = request.get("id")
    params = request.get("params", {}) or {}
    logger.debug("mcp_request method=%s id=%s params=%s", method, request_id, summarize_payload(params))

    handler = METHODS.get(method)
    if handler is None:
        if request_id is None:
            return None
        return _error_response(request_id, METHOD_NOT_FOUND, f"Unknown method: {method}")
    result = handler(params, settings, request_id)
    logger.debug("mcp_response id=%s result=%s", request_id, summarize_payload(result))
    return _result_response(request_id, result)


def _write(response: Dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(response) + "\n")
    sys.stdout.flush()


def run_server(settings: Settings) -> None:
    """Serve newline-delimited JSON-RPC requests from stdin until EOF."""
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        try:
            request = json.loads(line)
        except json.JSONDecodeError as exc:
            _write(_error_response(None, PARSE_ERROR, f"Invalid JSON: {exc}"))
            continue
        try:
            response = _handle_request(request, settings)
        except Exception:
            logger.exception("mcp_internal_error method=%s", request.get("method"))
            response = _error_response(request.get("id"), INTERNAL_ERROR, "Internal error")
        if response is not None:
            _write(response)


def main() -> None:
    parser = argparse.ArgumentParser(description="Hymn score positioning MCP server (stdio).")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument("--log-dir", default="logs", help="Directory for the server log file.")
    parser.add_argument("--score-root", default=None, help="Directory that tool file paths are resolved against.")
    args = parser.parse_args()

    log_dir = Path(args.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        handlers=[
            logging.StreamHandler(sys.stderr),
            logging.FileHandler(log_dir / "mcp_server.log", encoding="utf-8"),
        ],
    )
    ensure_timestamped_handlers()

    settings = Settings.from_env()
    if args.score_root:
        settings = replace(settings, score_root=args.score_root)
    logger.info("mcp_server_start version=%s score_root=%s", __version__, settings.score_root or "<package>")
    run_server(settings)


if __name__ == "__main__":
    main()
