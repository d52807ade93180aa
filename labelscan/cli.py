from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import List, Optional

from .config import Config, load_config
from .fetcher import FetchClient
from .orchestrator import JobOrchestrator, RunSummary
from .remote import RemoteFetchClient
from .session import RenderSessionManager
from .utils import SessionStartupError, init_logging

logger = logging.getLogger("labelscan")


# ----------------------------
# CLI parsing
# ----------------------------

def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="labelscan",
        description="Check marketplace product pages for product fiche, energy label and mouseover label",
    )
    p.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                   help="Console/file log level (default: LOG_LEVEL env or INFO)")
    sub = p.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP analyzer service")
    serve.add_argument("--host", type=str, default=None, help="Bind address (default: SERVER_HOST)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: PORT)")

    run = sub.add_parser("run", help="Analyze a list of URLs, one per line")
    run.add_argument("file", type=Path, help="Text file with one URL per line ('#' starts a comment)")
    run.add_argument("--concurrency", type=int, default=None, help="Worker count (default: MAX_CONCURRENCY)")
    run.add_argument("--remote", type=str, default=None,
                     help="Base URL of a running analyzer service; analyze locally when omitted")
    run.add_argument("--out", type=Path, default=None, help="Write one JSON line per job to this file")
    run.add_argument("--limit", type=int, default=None, help="Only analyze the first N URLs")
    return p.parse_args(argv)


def load_targets(path: Path, limit: Optional[int] = None) -> List[str]:
    targets: List[str] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        s = line.strip()
        if not s or s.startswith("#"):
            continue
        targets.append(s)
        if limit is not None and len(targets) >= limit:
            break
    return targets


def _format_summary(summary: RunSummary) -> str:
    return (
        f"{summary.state.value}: {summary.processed}/{summary.total} processed, "
        f"{summary.succeeded} succeeded, {summary.failed} failed, {summary.skipped} skipped "
        f"in {summary.elapsed_s:.1f}s ({summary.avg_s_per_target:.2f}s/target)"
    )


async def run_batch(cfg: Config, targets: List[str], *, remote: Optional[str] = None,
                    out: Optional[Path] = None) -> RunSummary:
    session: Optional[RenderSessionManager] = None
    if remote:
        fetch_client: FetchClient = RemoteFetchClient(cfg.with_overrides(remote_base_url=remote))
    else:
        session = RenderSessionManager(cfg)
        fetch_client = FetchClient(cfg, session)
    orchestrator = JobOrchestrator(cfg, fetch_client)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.stop)
        sigint_installed = True
    except (NotImplementedError, RuntimeError):
        sigint_installed = False

    try:
        summary = await orchestrator.run(targets)
    finally:
        if sigint_installed:
            loop.remove_signal_handler(signal.SIGINT)
        # a stopped run returns before its in-flight jobs settle
        await orchestrator.shutdown(timeout=cfg.request_timeout_ms / 1000.0)
        await fetch_client.aclose()
        if session is not None:
            await session.close(reason="run finished")

    if out is not None:
        out.parent.mkdir(parents=True, exist_ok=True)
        with out.open("w", encoding="utf-8") as f:
            for job in orchestrator.jobs():
                f.write(json.dumps(job.to_dict(), ensure_ascii=False) + "\n")
        logger.info("Wrote %d job records to %s", len(orchestrator.jobs()), out)
    return summary


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    cfg = load_config()
    if args.log_level:
        cfg = cfg.with_overrides(log_level=args.log_level)
    init_logging(cfg.log_file, getattr(logging, cfg.log_level, logging.INFO))

    if args.command == "serve":
        from .server import run_server
        run_server(cfg, host=args.host, port=args.port)
        return 0

    if args.concurrency is not None:
        cfg = cfg.with_overrides(max_concurrency=max(1, args.concurrency))
    if not args.file.exists():
        logger.error("Input file not found: %s", args.file)
        return 2
    targets = load_targets(args.file, args.limit)
    if not targets:
        logger.error("No URLs found in %s", args.file)
        return 2

    try:
        summary = asyncio.run(run_batch(cfg, targets, remote=args.remote, out=args.out))
    except SessionStartupError as e:
        logger.error("Could not start the rendering browser: %s", e)
        return 3

    print(_format_summary(summary))
    return 0 if summary.failed == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
