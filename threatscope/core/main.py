"""
@file main.py
@brief Main entry point for container and cluster threat scanning

This script audits every target of the inventory by:
1. Connecting to each Docker host or Kubernetes control-plane node over SSH
2. Collecting a read-only snapshot of containers, workloads and versions
3. Running the configuration rules and the version checks against the feed
4. Ranking the threats of each subject by severity
5. Writing JSON reports (and optionally an HTML dashboard)

@details
The script uses:
- SSH to collect snapshots from the targets
- NVD API to retrieve version ranges for engines, kernels and CNI plugins
- Local SQLite caching to avoid repeated feed queries
- Rate limiting to respect API quotas
"""

import argparse
import configparser
import logging
import os
import sys
import threading
from datetime import datetime

from threatscope.acquisition import host_probe
from threatscope.caching.constants import API_REQUEST_DELAY, CACHE_DIR, DEFAULT_INVENTORY, NVD_API_KEY
from threatscope.caching.feed_client import CachedFeedClient, NvdFeedClient
from threatscope.core.errors import CollaboratorUnreachableError
from threatscope.core.orchestrator import NAMESPACE_STANDARD, ScanOptions, ScanOrchestrator
from threatscope.matching.version_matcher import VersionMatcher
from threatscope.reporting import output_formatter as fmt
from threatscope.reporting.html_report_generator import generate_html_report
from threatscope.reporting.report_generator import save_target_report

logger = logging.getLogger(__name__)

TARGET_TYPES = ("docker", "kubernetes")


def setup_logging(log_dir="logs"):
    """
    Send all log records to a timestamped file under log_dir.

    @return str Path of the log file
    """
    os.makedirs(log_dir, exist_ok=True)
    log_filename = os.path.join(log_dir, f"threat_scan_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log")
    logging.basicConfig(
        level=logging.DEBUG,
        format='%(asctime)s - %(levelname)s - %(name)s - %(message)s',
        handlers=[
            logging.FileHandler(log_filename)
        ]
    )
    # paramiko is very chatty at DEBUG
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    return log_filename


def parse_arguments(argv=None):
    """
    Parse command-line arguments.

    @return argparse.Namespace Parsed arguments

    @details
    Examples:
    - python main.py --inventory custom_inventory.ini
    - python main.py --namespace all --workers 8
    - python main.py --offline --html
    """
    parser = argparse.ArgumentParser(
        description="Security audit of Docker hosts and Kubernetes clusters"
    )
    parser.add_argument(
        "--inventory",
        type=str,
        default=DEFAULT_INVENTORY,
        help=f"Path to inventory file (default: {DEFAULT_INVENTORY})"
    )
    parser.add_argument(
        "--namespace",
        type=str,
        default=NAMESPACE_STANDARD,
        help="'standard' skips system namespaces, 'all' scans every namespace, "
             "any other value scans only that namespace (default: standard)"
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Number of subjects evaluated concurrently (default: 1)"
    )
    parser.add_argument(
        "--flush-cache",
        action="store_true",
        help="Flush the feed cache before scanning"
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Answer version checks from the feed cache only"
    )
    parser.add_argument(
        "--html",
        action="store_true",
        help="Also render an HTML dashboard of the run"
    )
    parser.add_argument(
        "--fail-closed",
        action="store_true",
        help="Treat unparseable versions as not vulnerable"
    )
    return parser.parse_args(argv)


def build_feed(offline, cancel_event):
    """Cache-first feed client, backed by NVD unless offline."""
    if offline:
        logger.info("Offline mode: feed answers come from the cache only")
        return CachedFeedClient(None)
    return CachedFeedClient(NvdFeedClient(NVD_API_KEY, API_REQUEST_DELAY, cancel_event))


def scan_target(config, machine, orchestrator):
    """
    Collect a snapshot of one inventory target and scan it.

    @return Report|None Findings of the target, None for unsupported types
    @throws CollaboratorUnreachableError when the target cannot be reached
    """
    target_type = config[machine].get("type", "").lower()
    if target_type == "docker":
        host = host_probe.collect_docker_host(config, machine)
        return orchestrator.scan_host(host)
    if target_type == "kubernetes":
        cluster = host_probe.collect_cluster(config, machine)
        return orchestrator.scan_cluster(cluster)

    fmt.print_warning(f"Unsupported target type '{target_type}' for {machine}, expected one of {TARGET_TYPES}")
    logger.warning(f"Skipping {machine}: unsupported target type '{target_type}'")
    return None


def main(argv=None):
    """
    Main entry point for the threat scanner application.

    @return int Exit code (0 when at least one target was scanned, 1 otherwise)
    """
    args = parse_arguments(argv)
    log_filename = setup_logging()

    logger.info("=" * 70)
    logger.info("Starting Threat Scan")
    logger.info(f"Log file: {log_filename}")
    logger.info(f"Configuration file: {args.inventory}")

    if not os.path.exists(args.inventory):
        fmt.print_error(f"Inventory file not found: {args.inventory}")
        logger.error(f"Inventory file not found: {args.inventory}")
        return 1

    config = configparser.ConfigParser()
    config.read(args.inventory)
    machines = config.sections()
    logger.info(f"Total targets in inventory: {len(machines)}")

    cancel_event = threading.Event()
    feed = build_feed(args.offline, cancel_event)

    if args.flush_cache:
        fmt.print_section("Flushing Caches")
        if feed.flush():
            fmt.print_success("Feed cache flushed")
        else:
            fmt.print_info("No feed cache found to flush")

    options = ScanOptions(
        namespace=args.namespace,
        max_workers=max(1, args.workers),
        cancel_event=cancel_event,
    )
    orchestrator = ScanOrchestrator(feed, VersionMatcher(fail_open=not args.fail_closed), options)

    reports = []
    try:
        for machine in machines:
            fmt.print_section(f"{machine} - {config[machine].get('host', '?')}")
            logger.info(f"Processing target: {machine}")
            try:
                report = scan_target(config, machine, orchestrator)
            except CollaboratorUnreachableError as e:
                fmt.print_error(f"Could not scan {machine}: {e}")
                logger.error(f"Could not scan {machine}: {e}")
                continue
            if report is None:
                continue

            fmt.print_report(report)
            save_target_report(report, CACHE_DIR)
            reports.append(report)
    except KeyboardInterrupt:
        cancel_event.set()
        fmt.print_warning("Scan interrupted, reports written so far are kept")
        logger.warning("Scan interrupted by user")

    if args.html and reports:
        html_file = generate_html_report(reports)
        fmt.print_success(f"HTML report generated: {html_file}")

    total_findings = sum(len(r) for r in reports)
    total_threats = sum(r.total_threats() for r in reports)
    fmt.print_stats(len(machines), len(reports), total_findings, total_threats)
    logger.info("=" * 70)
    logger.info(f"Threat scan completed: {len(reports)}/{len(machines)} targets scanned")
    logger.info(f"Total threats found: {total_threats}")
    logger.info(f"Log file saved to: {log_filename}")
    logger.info("=" * 70)

    return 0 if reports or not machines else 1


if __name__ == "__main__":
    sys.exit(main())
