"""visual-agent: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import yaml

from visual_agent.engine.config import EngineConfig

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def configure_logging(config: EngineConfig, *, to_stderr: bool = False) -> Path:
    """Install the rotating file handler (and optionally stderr).

    Returns the log file path.
    """
    log_dir = config.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "visual-agent.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    if to_stderr:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    return log_file


def load_config(config_path: str | None = None) -> EngineConfig:
    """Env-derived config, with a YAML file layered on top when one is found."""
    from visual_agent.engine.yaml_config import discover_config_path, load_yaml_config

    config = EngineConfig.from_env()
    path = Path(config_path).expanduser() if config_path else discover_config_path()
    if path is not None:
        config = load_yaml_config(path, base=config)
    return config


async def _run(args, config: EngineConfig) -> None:
    from visual_agent.adapters.bridge import ChatBridge

    bridge = ChatBridge(config)
    if args.cwd:
        chosen = await bridge.select_folder(lambda: args.cwd)
        if chosen is None:
            logging.getLogger(__name__).warning("--cwd %s is not a directory", args.cwd)
    if args.model:
        bridge.set_model(args.model)

    if args.server:
        from visual_agent.server.server import AgentServer

        server = AgentServer(bridge, host=args.host, port=args.port)
        await server.start()
        return

    from visual_agent.console import ConsoleApp

    await ConsoleApp(bridge).run()


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="visual-agent",
        description="visual-agent: chat front end for the claude CLI",
    )
    parser.add_argument(
        "--list", action="store_true",
        help="List saved conversations and exit",
    )
    parser.add_argument(
        "--cwd", metavar="PATH",
        help="Project folder the agent runs in (remembered for later runs)",
    )
    parser.add_argument(
        "--model", metavar="ALIAS",
        help="Model alias to use (remembered for later runs)",
    )
    parser.add_argument(
        "--server", action="store_true",
        help="Start HTTP+SSE server mode",
    )
    parser.add_argument(
        "--host", default="127.0.0.1",
        help="Server bind address (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int, default=0,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: ./.visual-agent.yaml, then ~/.visual-agent/config.yaml)",
    )
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"visual-agent: cannot load config: {exc}", file=sys.stderr)
        sys.exit(2)

    log_file = configure_logging(config, to_stderr=args.server)
    logger = logging.getLogger(__name__)

    if args.list:
        from visual_agent.shared.services.session_index import SessionIndex

        sessions = SessionIndex(config.sessions_path).list()
        if not sessions:
            print("No saved conversations.")
        else:
            for summary in sessions:
                print(f"  {summary.id[:8]}  {summary.title}  ({summary.project_name}, {summary.message_count} msgs)")
        sys.exit(0)

    logger.info(
        "Starting visual-agent mode=%s cwd=%s config=%s log=%s",
        "server" if args.server else "console",
        Path.cwd(),
        args.config or "<auto>",
        log_file,
    )
    try:
        asyncio.run(_run(args, config))
    except KeyboardInterrupt:
        pass
    sys.exit(0)


if __name__ == "__main__":
    main()
