"""CLI entrypoint: deploy the repository at --source (default: cwd) into --to/<name>."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import structlog
from pydantic import ValidationError

from branch_deployer.core.config import LOG_LEVELS, Settings
from branch_deployer.core.exceptions import DeployerError
from branch_deployer.deploy.deployer import Deployer
from branch_deployer.middleware.registry import build_default_registry
from branch_deployer.repository.gateway import GitGateway
from branch_deployer.utils.logging import setup_logging

logger = structlog.get_logger()


def repository_name(source: Path) -> str:
    """Name of the deployed application: the source directory without a .git suffix."""
    name = source.resolve().name
    if name.endswith(".git"):
        name = name[: -len(".git")]
    return name


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="branch-deployer",
        description="Deploy every branch of a git repository into its own target directory",
    )
    parser.add_argument("--to", required=True, help="Directory holding the target roots of all applications")
    parser.add_argument("--source", default=None, help="Source repository (default: current directory)")
    parser.add_argument("--proxy-port", type=int, default=None, help="Port of the restart proxy")
    parser.add_argument("--closure-root", default=None, help="Closure Compiler install root")
    parser.add_argument("--log-level", type=str.upper, choices=list(LOG_LEVELS), default=None)
    parser.add_argument("--log-format", choices=["json", "console"], default=None)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    overrides = {
        "proxy_port": args.proxy_port,
        "closure_root": args.closure_root,
        "log_level": args.log_level,
        "log_format": args.log_format,
    }
    try:
        settings = Settings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as exc:
        parser.error(f"invalid configuration: {exc}")
    setup_logging(settings.log_level, settings.log_format)

    source = Path(args.source) if args.source else Path.cwd()
    app_name = repository_name(source)
    target_root = Path(args.to) / app_name

    deployer = Deployer(
        source=source,
        gateway=GitGateway(settings.git_bin),
        registry=build_default_registry(settings, app_name),
        settings=settings,
    )

    try:
        result = asyncio.run(deployer.deploy_to(target_root))
    except DeployerError as exc:
        logger.error("The deployment process failed", error=str(exc), code=exc.code)
        return 1

    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
