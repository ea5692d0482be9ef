# Copyright 2025 Ralph Lemke
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""QAPI command-line interface."""

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from .config import QAPIConfig, load_config
from .runtime.debug import DebugLogEntry, DebugSessionManager
from .runtime.entities import Backfill, DebugList, ExecutionMode, IndexerFunctionSpec, RealTime
from .runtime.errors import QAPIError
from .runtime.fetcher import HttpBlockFetcher
from .runtime.persistence import PersistenceAPI
from .runtime.provisioner import SchemaProvisioner
from .runtime.service import ExecutionService
from .runtime.types import IndexerKey, namespace_for
from .typegen import generate_type_descriptor

logger = logging.getLogger(__name__)


# =========================================================================
# Argument builders
# =========================================================================


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    """Add arguments shared by all subcommands."""
    parser.add_argument(
        "--config",
        metavar="FILE",
        help="Path to QAPI config file (JSON). "
        "Defaults to qapi.config.json in cwd, ~/.qapi/, or /etc/qapi/",
    )

    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: WARNING)",
    )

    parser.add_argument(
        "--log-file",
        default=None,
        metavar="FILE",
        help="Log to file instead of stderr",
    )


def _add_identity_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--account", required=True, help="Owning account id")
    parser.add_argument("--function", required=True, dest="function_name", help="Indexer function name")


def _add_function_args(parser: argparse.ArgumentParser) -> None:
    _add_identity_args(parser)
    parser.add_argument("--code", required=True, metavar="FILE", help="File holding the function body")
    parser.add_argument("--schema", required=True, metavar="FILE", help="File holding the schema DDL")
    parser.add_argument("--filter", default=None, help="Contract filter (comma-separated patterns)")
    parser.add_argument("--version", type=int, default=0, help="Registry version of the function")
    parser.add_argument("--blocks-url", default=None, help="Override the block store URL")


def _build_types_parser(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("schema", nargs="?", help="Schema file (reads from stdin if not provided)")
    parser.add_argument("-o", "--output", help="Output file (writes to stdout if not provided)")
    parser.add_argument("--json", action="store_true", help="Emit the JSON descriptor instead of a stub")


def _build_provision_parser(parser: argparse.ArgumentParser) -> None:
    _add_identity_args(parser)
    parser.add_argument("--schema", required=True, metavar="FILE", help="File holding the schema DDL")


def _build_start_parser(parser: argparse.ArgumentParser) -> None:
    _add_function_args(parser)
    parser.add_argument(
        "--mode",
        choices=["realtime", "backfill"],
        default="realtime",
        help="Execution mode (default: realtime)",
    )
    parser.add_argument("--from", dest="start_height", type=int, help="Backfill start height")
    parser.add_argument("--to", dest="end_height", type=int, help="Backfill end height (default: follow head)")
    parser.add_argument("--heights", help="Comma-separated heights to replay once")


def _build_resume_parser(parser: argparse.ArgumentParser) -> None:
    _add_function_args(parser)


def _build_stop_parser(parser: argparse.ArgumentParser) -> None:
    _add_identity_args(parser)


def _build_status_parser(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--account", help="Owning account id")
    parser.add_argument("--function", dest="function_name", help="Indexer function name")
    parser.add_argument("--status", help="Only list indexers in this status")


def _build_debug_parser(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--code", required=True, metavar="FILE", help="File holding the function body")
    parser.add_argument("--schema", required=True, metavar="FILE", help="File holding the schema DDL")
    parser.add_argument("--namespace", default="debug", help="Namespace id of the session")
    parser.add_argument("--filter", default=None, help="Contract filter (comma-separated patterns)")
    parser.add_argument("--blocks-url", default=None, help="Override the block store URL")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--heights", help="Comma-separated heights to replay")
    group.add_argument("--from", dest="start_height", type=int, help="Follow the chain from this height")
    group.add_argument("--latest", action="store_true", help="Follow the chain from just below the head")


def _build_serve_parser(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")


def _configure_logging(parsed: argparse.Namespace) -> None:
    """Set up logging from parsed CLI args."""
    log_handlers: list[logging.Handler] = []
    if parsed.log_file:
        log_handlers.append(logging.FileHandler(parsed.log_file))
    else:
        log_handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=getattr(logging, parsed.log_level),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        handlers=log_handlers,
    )


# =========================================================================
# Helpers
# =========================================================================


def _open_store(config: QAPIConfig) -> PersistenceAPI:
    """Open the durable store named by *config*."""
    from .runtime.mongo_store import MongoStore

    return MongoStore.from_config(config.mongodb)


def _close_store(store: PersistenceAPI) -> None:
    close = getattr(store, "close", None)
    if close is not None:
        close()


def _fetcher(config: QAPIConfig, parsed: argparse.Namespace) -> HttpBlockFetcher:
    url = parsed.blocks_url or config.blocks.url
    return HttpBlockFetcher(url, timeout=config.blocks.request_timeout)


def _parse_heights(text: str) -> list[int]:
    return [int(h) for h in text.split(",") if h.strip()]


def _load_spec(parsed: argparse.Namespace) -> IndexerFunctionSpec:
    return IndexerFunctionSpec(
        account_id=parsed.account,
        function_name=parsed.function_name,
        code=Path(parsed.code).read_text(),
        schema=Path(parsed.schema).read_text(),
        filter=parsed.filter,
        version=parsed.version,
    )


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _wait_for(service: ExecutionService, key: IndexerKey) -> None:
    """Block until the loop of *key* exits; Ctrl-C requests a stop."""
    try:
        while not service.join(key, timeout=0.5):
            pass
    except KeyboardInterrupt:
        print("Stopping...", file=sys.stderr)
        service.stop(key, wait=True)


# =========================================================================
# Handlers
# =========================================================================


def _handle_types(parsed: argparse.Namespace) -> int:
    """Execute the types subcommand."""
    try:
        text = Path(parsed.schema).read_text() if parsed.schema else sys.stdin.read()
    except OSError as e:
        print(f"Error reading schema: {e}", file=sys.stderr)
        return 1

    try:
        descriptor = generate_type_descriptor(text)
    except QAPIError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    output = json.dumps(descriptor.to_dict(), indent=2) if parsed.json else descriptor.render()
    try:
        if parsed.output:
            Path(parsed.output).write_text(output + "\n")
        else:
            print(output)
    except OSError as e:
        print(f"Error writing output: {e}", file=sys.stderr)
        return 1
    return 0


def _handle_provision(parsed: argparse.Namespace) -> int:
    """Execute the provision subcommand."""
    config = load_config(parsed.config)
    try:
        schema_text = Path(parsed.schema).read_text()
    except OSError as e:
        print(f"Error reading schema: {e}", file=sys.stderr)
        return 1

    store = _open_store(config)
    try:
        namespace = namespace_for(parsed.account, parsed.function_name)
        provisioned = SchemaProvisioner(store).provision(
            schema_text, namespace, parsed.account, parsed.function_name
        )
    except QAPIError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        _close_store(store)

    print(f"OK: namespace {provisioned.namespace} ({', '.join(provisioned.tables)})", file=sys.stderr)
    return 0


def _start_mode(parsed: argparse.Namespace) -> ExecutionMode:
    if parsed.heights:
        return DebugList(_parse_heights(parsed.heights))
    if parsed.mode == "backfill":
        if parsed.start_height is None:
            raise ValueError("--mode backfill requires --from")
        return Backfill(parsed.start_height, parsed.end_height)
    return RealTime()


def _handle_start(parsed: argparse.Namespace, resume: bool = False) -> int:
    """Execute the start and resume subcommands (runs in the foreground)."""
    config = load_config(parsed.config)
    try:
        spec = _load_spec(parsed)
        mode = None if resume else _start_mode(parsed)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    store = _open_store(config)
    service = ExecutionService(store, _fetcher(config, parsed), config)
    try:
        service.recover()
        if resume:
            service.resume(spec.key, spec)
        else:
            service.start(spec, mode)
        _wait_for(service, spec.key)
        state = service.status(spec.key)
    except QAPIError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        _close_store(store)

    _print_json(state)
    return 0 if state and not state["error"] else 1


def _handle_stop(parsed: argparse.Namespace) -> int:
    """Execute the stop subcommand.

    Loops run inside the process that started them; from the command line
    only an interrupted indexer can be marked stopped. Running loops are
    stopped through the HTTP surface of the process hosting them.
    """
    config = load_config(parsed.config)
    store = _open_store(config)
    service = ExecutionService(store, HttpBlockFetcher(config.blocks.url), config)
    key = IndexerKey(parsed.account, parsed.function_name)
    try:
        service.stop(key)
        state = service.status(key)
    except QAPIError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        _close_store(store)
    _print_json(state)
    return 0


def _handle_status(parsed: argparse.Namespace) -> int:
    """Execute the status subcommand."""
    config = load_config(parsed.config)
    store = _open_store(config)
    service = ExecutionService(store, HttpBlockFetcher(config.blocks.url), config)
    try:
        if parsed.account and parsed.function_name:
            state = service.status(IndexerKey(parsed.account, parsed.function_name))
            if state is None:
                print("Error: indexer has no run state", file=sys.stderr)
                return 1
            _print_json(state)
        else:
            _print_json(service.list(parsed.status))
    except QAPIError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        _close_store(store)
    return 0


def _print_entry(entry: DebugLogEntry) -> None:
    height = "-" if entry.height is None else entry.height
    print(f"[{height}] {entry.status} {entry.summary} ({entry.elapsed_ms} ms)")
    for line in entry.logs:
        print(f"    {line}")
    sys.stdout.flush()


def _handle_debug(parsed: argparse.Namespace) -> int:
    """Execute the debug subcommand (prints one line per height)."""
    config = load_config(parsed.config)
    try:
        code = Path(parsed.code).read_text()
        schema = Path(parsed.schema).read_text()
        heights = _parse_heights(parsed.heights) if parsed.heights else None
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if heights is not None:
        option = "debugList"
    elif parsed.latest:
        option = "latest"
    else:
        option = "specific"

    manager = DebugSessionManager(_fetcher(config, parsed), config.debug, config.runner)
    try:
        handle = manager.run(
            option,
            code,
            schema,
            parsed.namespace,
            starting_height=parsed.start_height,
            heights=heights,
            contract_filter=parsed.filter,
            sink=_print_entry,
        )
    except (QAPIError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        while not handle.wait(timeout=0.5):
            pass
    except KeyboardInterrupt:
        manager.stop(handle)
        handle.wait()

    if handle.error:
        print(f"Session ended with error: {handle.error}", file=sys.stderr)
        return 1
    return 0


def _handle_serve(parsed: argparse.Namespace) -> int:  # pragma: no cover
    """Execute the serve subcommand."""
    import uvicorn

    # Pass config via environment so the app factory can pick it up
    if parsed.config:
        os.environ["QAPI_CONFIG"] = parsed.config

    uvicorn.run(
        "qapi.api.app:create_app",
        factory=True,
        host=parsed.host,
        port=parsed.port,
        reload=parsed.reload,
    )
    return 0


# name -> (argument builder, handler, description)
_SUBCOMMANDS = {
    "types": (_build_types_parser, _handle_types, "Generate typed row descriptions for a schema"),
    "provision": (_build_provision_parser, _handle_provision, "Provision an indexer namespace"),
    "start": (_build_start_parser, _handle_start, "Run an indexer in the foreground"),
    "resume": (
        _build_resume_parser,
        lambda parsed: _handle_start(parsed, resume=True),
        "Resume an indexer after its last persisted height",
    ),
    "stop": (_build_stop_parser, _handle_stop, "Mark an interrupted indexer stopped"),
    "status": (_build_status_parser, _handle_status, "Show indexer run states"),
    "debug": (_build_debug_parser, _handle_debug, "Replay blocks in a scratch debug session"),
    "serve": (_build_serve_parser, _handle_serve, "Serve the HTTP API"),
}


# =========================================================================
# Main entry point
# =========================================================================


def main(args: list[str] | None = None) -> int:
    """Main entry point for the QAPI CLI.

    Args:
        args: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code (0 for success, non-zero for errors)
    """
    argv = list(args if args is not None else sys.argv[1:])

    if not argv or argv[0] not in _SUBCOMMANDS:
        names = ", ".join(_SUBCOMMANDS)
        if argv and argv[0] not in ("-h", "--help"):
            print(f"Unknown subcommand: {argv[0]}", file=sys.stderr)
        print(f"usage: qapi {{{names}}} ...", file=sys.stderr)
        return 0 if argv and argv[0] in ("-h", "--help") else 1

    subcommand, remaining = argv[0], argv[1:]
    build, handle, description = _SUBCOMMANDS[subcommand]
    parser = argparse.ArgumentParser(prog=f"qapi {subcommand}", description=description)
    build(parser)
    _add_common_args(parser)
    parsed = parser.parse_args(remaining)
    _configure_logging(parsed)
    return handle(parsed)


if __name__ == "__main__":
    sys.exit(main())
