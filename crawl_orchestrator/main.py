"""
Command line entry point for the crawl orchestration engine.
"""

import argparse
import signal
import sys
import threading
from typing import List, Optional

from crawl_orchestrator.utils.logging import get_logger, setup_logging
from crawl_orchestrator.utils.errors import ConfigurationError, describe_error
from crawl_orchestrator.concurrent.models import EngineState
from crawl_orchestrator.concurrent.controller import CrawlEngine
from config import ConfigManager


logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="crawl-orchestrator",
        description="Run a multi-threaded crawl driven by a rule module"
    )
    parser.add_argument("urls", nargs="*", help="Start urls (in addition to the start file)")
    parser.add_argument("--config", default="crawl.json", help="JSON configuration file")
    parser.add_argument("--threads", type=int, help="Number of spider workers")
    parser.add_argument("--retry", type=int, help="Fetch retry budget per task")
    parser.add_argument("--interval", type=float, help="Seconds each worker waits between tasks")
    parser.add_argument("--loop", action="store_true", help="Continuous mode: run until stopped")
    parser.add_argument("--no-proxy", action="store_true", help="Disable proxy selection")
    parser.add_argument("--mobile", action="store_true", help="Use the mobile fetch profile")
    parser.add_argument("--debug", action="store_true", help="Log crawler collaborators at DEBUG")
    parser.add_argument("--rules", help="Rule module (dotted path)")
    parser.add_argument("--start-file", help="Start task file (JSON)")
    parser.add_argument("--proxy-file", help="Proxy list file")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--log-file", help="Log file path (rotated daily)")
    return parser


class CrawlApp:
    """Wires configuration, logging and signals around one engine run."""

    def __init__(self, args: argparse.Namespace):
        self.args = args
        self.engine: Optional[CrawlEngine] = None

    def build_engine(self) -> CrawlEngine:
        args = self.args
        manager = ConfigManager(args.config)
        config = manager.load_config(
            thread_count=args.threads,
            retry=args.retry,
            interval=args.interval,
            loop=True if args.loop else None,
            proxy=False if args.no_proxy else None,
            mobile=True if args.mobile else None,
            debug=True if args.debug else None,
            rule_module=args.rules,
            start_file=args.start_file,
            proxy_file=args.proxy_file
        )
        engine = CrawlEngine(config=config)
        engine.add_start_urls(*args.urls)
        return engine

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._stop_handler)
        signal.signal(signal.SIGTERM, self._stop_handler)
        if hasattr(signal, "SIGHUP"):
            signal.signal(signal.SIGHUP, self._reload_handler)

    def _stop_handler(self, signum: int, frame) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, initiating graceful shutdown")
        if self.engine is not None:
            self.engine.stop(wait=False)

    def _reload_handler(self, signum: int, frame) -> None:
        """Reload the rule module without stopping the crawl."""
        logger.info(f"Received signal {signum}, reloading rules")
        if self.engine is not None:
            threading.Thread(target=self._reload_rules, name="RuleReload", daemon=True).start()

    def _reload_rules(self) -> None:
        try:
            if not self.engine.reload_rules():
                logger.warning("Rule reload did not complete")
        except (ConfigurationError, ImportError, SyntaxError) as e:
            logger.error(f"Rule reload failed, keeping current rules: {describe_error(e)}")

    def run(self) -> int:
        try:
            self.engine = self.build_engine()
        except ConfigurationError as e:
            logger.error(f"Invalid configuration: {describe_error(e)}")
            return 2

        self.install_signal_handlers()
        self.engine.start()

        # Poll so the main thread stays responsive to signals
        while not self.engine.await_termination(timeout=0.5):
            if self.engine.join(timeout=0) and self.engine.state == EngineState.CONFIGURED:
                logger.error("Engine failed to start")
                return 1

        status = self.engine.get_status()
        logger.info(f"Crawl finished: {status['tasks']}")
        return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        logging_config = ConfigManager(args.config).load_logging_config()
    except ConfigurationError as e:
        setup_logging("INFO")
        logger.error(f"Invalid configuration: {describe_error(e)}")
        return 2

    setup_logging(
        log_level=args.log_level or logging_config.log_level,
        log_file=args.log_file or logging_config.log_file,
        retention_days=logging_config.retention_days
    )

    return CrawlApp(args).run()


if __name__ == "__main__":
    sys.exit(main())
