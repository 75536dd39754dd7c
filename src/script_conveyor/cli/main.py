"""Command line entry point for the script conveyor.

``script-conveyor serve`` starts the HTTP API with uvicorn, and
``script-conveyor run-once`` ingests content items from a JSON file, runs a
single scheduling pass and prints the generated scripts.
"""
from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..config import AGENT_BACKENDS, AgentSettings, ServiceConfig, load_service_config

__all__ = ["main"]


def _load_config(args: argparse.Namespace) -> ServiceConfig:
    config = load_service_config(args.config)
    if args.agents:
        config.agents = AgentSettings(backend=args.agents)
    return config


def _read_items(path: Path) -> List[Dict[str, Any]]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("items", [])
    if not isinstance(data, list):
        raise SystemExit(f"{path} must contain a list of content items")
    return data


def _handle_serve(args: argparse.Namespace) -> None:
    import uvicorn

    from ..api.server import create_app
    from ..services.runtime import ConveyorRuntime

    app = create_app(ConveyorRuntime(_load_config(args)), run_periodic=not args.no_periodic)
    uvicorn.run(app, host=args.host, port=args.port)


async def _run_once(args: argparse.Namespace, items: List[Dict[str, Any]]) -> int:
    from ..services.runtime import ConveyorRuntime

    runtime = ConveyorRuntime(_load_config(args))
    try:
        await runtime.add_content_items(args.user, items)
        result = await runtime.scheduler.trigger(args.user)
        await runtime.scheduler.wait_idle()
        scripts = []
        for script_id in result.script_ids:
            script = await runtime.repository.get_script(script_id)
            iterations = await runtime.repository.list_iterations(script_id)
            scripts.append(
                {
                    "script": script.to_dict(),
                    "iterations": [iteration.to_dict() for iteration in iterations],
                }
            )
    finally:
        await runtime.shutdown()

    print(json.dumps({"trigger": result.to_payload(), "scripts": scripts}, indent=2, ensure_ascii=False))
    return 0 if result.success else 1


def _handle_run_once(args: argparse.Namespace) -> None:
    items_path = Path(args.items).expanduser()
    if not items_path.exists():
        raise SystemExit(f"Items file {items_path} does not exist")
    exit_code = asyncio.run(_run_once(args, _read_items(items_path)))
    if exit_code:
        raise SystemExit(exit_code)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate short video scripts from content items.")
    parser.add_argument("--config", default=None, help="Path to a services.toml file")
    parser.add_argument(
        "--agents",
        choices=AGENT_BACKENDS,
        default=None,
        help="Override the configured agent backend",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Interface to bind")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to listen on")
    serve_parser.add_argument(
        "--no-periodic",
        action="store_true",
        help="Do not trigger tenants on the configured interval",
    )
    serve_parser.set_defaults(func=_handle_serve)

    run_parser = subparsers.add_parser("run-once", help="Process content items from a JSON file")
    run_parser.add_argument("--items", required=True, help="JSON file with a list of content items")
    run_parser.add_argument("--user", default="default", help="Tenant the items belong to")
    run_parser.set_defaults(func=_handle_run_once)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":  # pragma: no cover
    main()
