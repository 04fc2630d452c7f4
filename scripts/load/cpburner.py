#!/usr/bin/env python3
"""
Kubernetes Control Plane Load Generation Script

Generates load on a Kubernetes API server (and the etcd behind it) by:
- Creating large numbers of Events or ConfigMaps
- Listing them page by page from many workers at once
- Deleting everything of one kind in the target namespace

Uses parallel workers to speed up operations.
"""

import argparse
import logging
import os
import random
import signal
import string
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, List, Optional, Tuple

import yaml
from dotenv import load_dotenv
from kubernetes import client
from kubernetes import config as kube_config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

RESOURCE_EVENT = 'event'
RESOURCE_CONFIGMAP = 'configmap'
RESOURCE_TYPES = (RESOURCE_EVENT, RESOURCE_CONFIGMAP)

ACTION_CREATE = 'create'
ACTION_LIST = 'list'
ACTION_CLEAN = 'clean'
ACTIONS = (ACTION_CREATE, ACTION_LIST, ACTION_CLEAN)

PAYLOAD_KEY = 'CPburnerTest'
COMMON_PREFIX = 'evt'

# Errors that count as a failed operation instead of aborting the run
API_ERRORS = (ApiException, HTTPError)

# --- Global Shutdown Control ---
shutdown_event = threading.Event()


def signal_handler(signum, frame):
    """Handle shutdown signals (SIGINT, SIGTERM)"""
    logger = logging.getLogger(__name__)
    signal_name = 'SIGINT' if signum == signal.SIGINT else 'SIGTERM'
    logger.warning(f"{signal_name} received. Initiating graceful shutdown...")
    logger.warning("Waiting for in-flight API calls to complete. Press Ctrl+C again to force quit.")
    shutdown_event.set()
    # A second signal of the same kind raises KeyboardInterrupt
    signal.signal(signum, signal.default_int_handler)


def setup_signal_handlers():
    """Register signal handlers for graceful shutdown"""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


# --- Exceptions ---

class CpburnerError(Exception):
    """Base class for errors that abort a run"""


class ConfigError(CpburnerError):
    """Invalid run configuration"""


class ClusterConfigError(CpburnerError):
    """Cluster credentials could not be loaded"""


class BulkOperationError(CpburnerError):
    """A bulk operation could not continue"""


# --- Dataclasses ---

def default_prefix() -> str:
    return f"{COMMON_PREFIX}-{int(time.time())}-{random.randint(0, 9998)}"


@dataclass
class Config:
    """Configuration for load generation"""
    action: str  # 'create', 'list' or 'clean'
    resource_type: str = RESOURCE_EVENT  # 'event' or 'configmap'
    namespace: str = 'default'
    concurrency: int = 100
    list_limit: int = 10000
    timeout: int = 300
    status_interval: float = 10.0
    kubeconfig: Optional[str] = None

    # Create config
    resource_count: int = 100000
    message_size: int = 24 * 1024
    prefix: str = field(default_factory=default_prefix)

    @property
    def per_worker_count(self) -> int:
        return self.resource_count // self.concurrency


@dataclass
class Stats:
    """Shared success/failure counters, safe to update from any worker"""
    succeeded: int = 0
    failed: int = 0
    start_time: float = 0
    end_time: float = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, ok: bool):
        with self._lock:
            if ok:
                self.succeeded += 1
            else:
                self.failed += 1

    def snapshot(self) -> Tuple[int, int]:
        with self._lock:
            return self.succeeded, self.failed

    @property
    def duration(self) -> float:
        end = self.end_time or time.time()
        return end - self.start_time if self.start_time else 0

    @property
    def total_operations(self) -> int:
        succeeded, failed = self.snapshot()
        return succeeded + failed

    @property
    def operations_per_second(self) -> float:
        if self.duration > 0:
            return self.total_operations / self.duration
        return 0


def validate_config(config: Config):
    """Reject configurations the workers cannot run with"""
    if config.action not in ACTIONS:
        raise ConfigError(f"Unknown action '{config.action}', expected one of: {', '.join(ACTIONS)}")
    if config.resource_type not in RESOURCE_TYPES:
        raise ConfigError(f"Unknown resource type '{config.resource_type}', "
                          f"expected one of: {', '.join(RESOURCE_TYPES)}")
    if not config.namespace:
        raise ConfigError("Namespace must not be empty")
    for name in ('concurrency', 'list_limit', 'timeout'):
        if getattr(config, name) <= 0:
            raise ConfigError(f"{name} must be positive, got {getattr(config, name)}")
    if config.status_interval <= 0:
        raise ConfigError(f"status_interval must be positive, got {config.status_interval}")
    if config.action == ACTION_CREATE:
        if config.resource_count <= 0:
            raise ConfigError(f"resource_count must be positive, got {config.resource_count}")
        if config.message_size <= 0:
            raise ConfigError(f"message_size must be positive, got {config.message_size}")
        if not config.prefix:
            raise ConfigError("Name prefix must not be empty")


# --- Common Functions ---

def setup_logging(level: str = "INFO"):
    """Configure logging"""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def load_cluster_config(config: Config) -> client.Configuration:
    """Load in-cluster credentials, or the kubeconfig file when one is given"""
    logger = logging.getLogger(__name__)
    configuration = client.Configuration()
    try:
        if config.kubeconfig:
            kube_config.load_kube_config(config_file=config.kubeconfig,
                                         client_configuration=configuration)
            logger.info(f"Using kubeconfig file: {config.kubeconfig}")
        else:
            kube_config.load_incluster_config(client_configuration=configuration)
            logger.info("Using in-cluster Kubernetes configuration")
    except (kube_config.ConfigException, yaml.YAMLError, OSError) as e:
        source = config.kubeconfig or 'in-cluster service account'
        raise ClusterConfigError(f"Failed to load Kubernetes configuration from {source}: {e}") from e

    # One pooled connection per worker
    configuration.connection_pool_maxsize = max(config.concurrency,
                                                configuration.connection_pool_maxsize or 0)
    return configuration


def create_api(configuration: client.Configuration) -> client.CoreV1Api:
    """Create a CoreV1 client with its own ApiClient"""
    return client.CoreV1Api(client.ApiClient(configuration))


def random_payload(size: int) -> str:
    """Generate a random ASCII message of the given size"""
    return ''.join(random.choices(string.ascii_letters, k=size))


def continue_token(page) -> Optional[str]:
    metadata = getattr(page, 'metadata', None)
    return getattr(metadata, '_continue', None) or None


# --- Resource Operations ---

@dataclass
class ResourceOps:
    """Maps create/list/delete onto the CoreV1Api calls for one resource kind"""
    resource_type: str
    namespace: str
    timeout: int = 300

    @property
    def _method_suffix(self) -> str:
        return 'event' if self.resource_type == RESOURCE_EVENT else 'config_map'

    def _call(self, api, verb: str, **kwargs):
        method = getattr(api, f"{verb}_namespaced_{self._method_suffix}")
        return method(namespace=self.namespace, _request_timeout=self.timeout, **kwargs)

    def build(self, name: str, payload: str):
        metadata = client.V1ObjectMeta(name=name, namespace=self.namespace)
        if self.resource_type == RESOURCE_EVENT:
            return client.CoreV1Event(
                metadata=metadata,
                involved_object=client.V1ObjectReference(namespace=self.namespace),
                reason=PAYLOAD_KEY,
                message=payload
            )
        return client.V1ConfigMap(
            api_version='v1',
            kind='ConfigMap',
            metadata=metadata,
            data={PAYLOAD_KEY: payload}
        )

    def create(self, api, body):
        return self._call(api, 'create', body=body)

    def list(self, api, limit: int, token: Optional[str] = None):
        kwargs = {'limit': limit, 'timeout_seconds': self.timeout}
        if token:
            kwargs['_continue'] = token
        return self._call(api, 'list', **kwargs)

    def delete(self, api, name: str):
        return self._call(api, 'delete', name=name)


# --- Status Reporting ---

class StatusReporter:
    """Logs the shared counters on a fixed interval from a daemon thread"""

    def __init__(self, stats: Stats, interval: float = 10.0):
        self.stats = stats
        self.interval = interval
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name='status-reporter', daemon=True)

    def _run(self):
        while not self._stopped.wait(self.interval):
            self.report()

    def report(self):
        logger = logging.getLogger(__name__)
        succeeded, failed = self.stats.snapshot()
        logger.info(f"success: {succeeded}, failure: {failed}")

    def start(self):
        self._thread.start()

    def stop(self):
        self._stopped.set()
        if self._thread.is_alive():
            self._thread.join()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        self.report()


# --- Workers ---

def create_worker(config: Config, ops: ResourceOps, api, stats: Stats,
                  worker_num: int, count: int, payload: str) -> int:
    """Create `count` objects named <prefix>-<worker_num>-<i>"""
    logger = logging.getLogger(__name__)
    created = 0
    for i in range(count):
        if shutdown_event.is_set():
            break
        name = f"{config.prefix}-{worker_num}-{i}"
        try:
            ops.create(api, ops.build(name, payload))
        except API_ERRORS as e:
            logger.debug(f"Failed to create {config.resource_type} {config.namespace}/{name}: {e}")
            stats.record(False)
            continue
        stats.record(True)
        created += 1
    logger.debug(f"Worker {worker_num} created {created}/{count} {config.resource_type}s")
    return created


def list_worker(config: Config, ops: ResourceOps, api, stats: Stats, worker_num: int) -> int:
    """Walk the whole collection page by page, counting each list call"""
    logger = logging.getLogger(__name__)
    token = None
    pages = 0
    while not shutdown_event.is_set():
        try:
            page = ops.list(api, config.list_limit, token)
        except API_ERRORS as e:
            # No continuation token to resume from
            logger.debug(f"Worker {worker_num} failed to list {config.resource_type}s: {e}")
            stats.record(False)
            break
        stats.record(True)
        pages += 1
        token = continue_token(page)
        if not page.items or not token:
            break
    logger.debug(f"Worker {worker_num} listed {pages} pages of {config.resource_type}s")
    return pages


def delete_worker(config: Config, ops: ResourceOps, api, stats: Stats, names: List[str]) -> int:
    """Delete the named objects one by one"""
    logger = logging.getLogger(__name__)
    deleted = 0
    for name in names:
        if shutdown_event.is_set():
            break
        try:
            ops.delete(api, name)
        except API_ERRORS as e:
            logger.debug(f"Failed to delete {config.resource_type} {config.namespace}/{name}: {e}")
            stats.record(False)
            continue
        stats.record(True)
        deleted += 1
    return deleted


# --- Dispatch ---

def wait_for_workers(futures, stats: Stats, label: str) -> int:
    """Collect worker results, logging progress; returns how many finished"""
    logger = logging.getLogger(__name__)
    total = len(futures)
    completed = 0
    for future in as_completed(futures):
        try:
            future.result()
        except Exception as e:
            logger.error(f"{label} worker failed: {e}")

        completed += 1
        succeeded, failed = stats.snapshot()
        progress = (completed / total) * 100
        logger.info(f"Progress: {completed}/{total} {label} workers ({progress:.1f}%) - "
                    f"{succeeded} succeeded, {failed} failed")

        if shutdown_event.is_set():
            logger.info("Shutdown requested, waiting for running workers to complete...")
            break

    if shutdown_event.is_set():
        for future in futures:
            if not future.done():
                future.cancel()
    return completed


def generate_objects(config: Config, ops: ResourceOps, api_factory: Callable, stats: Stats) -> int:
    """Create resource_count objects spread evenly across the workers"""
    logger = logging.getLogger(__name__)
    count = config.per_worker_count
    remainder = config.resource_count - count * config.concurrency

    logger.info(f"Starting {config.resource_type} generation:")
    logger.info(f"  Namespace: {config.namespace}")
    logger.info(f"  Name prefix: {config.prefix}")
    logger.info(f"  Workers: {config.concurrency}")
    logger.info(f"  Objects per worker: {count}")
    logger.info(f"  Message size: {config.message_size} bytes")
    if remainder:
        logger.warning(f"resource_count {config.resource_count} is not a multiple of "
                       f"{config.concurrency} workers, {remainder} objects will not be created")

    payload = random_payload(config.message_size)
    with ThreadPoolExecutor(max_workers=config.concurrency) as executor:
        futures = [executor.submit(create_worker, config, ops, api_factory(), stats,
                                   worker_num, count, payload)
                   for worker_num in range(config.concurrency)]
        return wait_for_workers(futures, stats, 'create')


def list_objects(config: Config, ops: ResourceOps, api_factory: Callable, stats: Stats) -> int:
    """Have every worker walk the full collection concurrently"""
    logger = logging.getLogger(__name__)
    logger.info(f"Starting {config.resource_type} listing:")
    logger.info(f"  Namespace: {config.namespace}")
    logger.info(f"  Workers: {config.concurrency}")
    logger.info(f"  Page size: {config.list_limit}")

    with ThreadPoolExecutor(max_workers=config.concurrency) as executor:
        futures = [executor.submit(list_worker, config, ops, api_factory(), stats, worker_num)
                   for worker_num in range(config.concurrency)]
        return wait_for_workers(futures, stats, 'list')


def clean_objects(config: Config, ops: ResourceOps, api_factory: Callable, stats: Stats) -> int:
    """
    Delete every object of the configured kind in the namespace.

    A single walker pages through the collection and fans each page out to
    the worker pool. When the continuation token runs out the walk restarts
    from the top, until a page comes back empty or a whole pass deletes
    nothing.
    """
    logger = logging.getLogger(__name__)
    logger.info(f"Starting {config.resource_type} cleanup:")
    logger.info(f"  Namespace: {config.namespace}")
    logger.info(f"  Workers: {config.concurrency}")
    logger.info(f"  Page size: {config.list_limit}")

    lister = api_factory()
    apis = [api_factory() for _ in range(config.concurrency)]
    token = None
    pages = 0
    deleted_in_pass = 0

    with ThreadPoolExecutor(max_workers=config.concurrency) as executor:
        while not shutdown_event.is_set():
            try:
                page = ops.list(lister, config.list_limit, token)
            except ApiException as e:
                if e.status == 410 and token:
                    logger.warning("Continuation token expired, restarting listing from the beginning")
                    token = None
                    continue
                raise BulkOperationError(
                    f"Failed to list {config.resource_type}s in {config.namespace}: {e}") from e
            except HTTPError as e:
                raise BulkOperationError(
                    f"Failed to list {config.resource_type}s in {config.namespace}: {e}") from e

            names = [item.metadata.name for item in page.items]
            if not names:
                break
            pages += 1

            batches = [names[i::config.concurrency] for i in range(config.concurrency)]
            futures = [executor.submit(delete_worker, config, ops, apis[i], stats, batch)
                       for i, batch in enumerate(batches) if batch]
            for future in as_completed(futures):
                deleted_in_pass += future.result()

            succeeded, failed = stats.snapshot()
            logger.info(f"Progress: page {pages} ({len(names)} {config.resource_type}s) - "
                        f"{succeeded} deleted, {failed} failed")

            token = continue_token(page)
            if not token:
                if deleted_in_pass == 0:
                    logger.warning(f"A full pass deleted no {config.resource_type}s, "
                                   f"giving up on the remaining objects")
                    break
                deleted_in_pass = 0
    return pages


def run(config: Config, api_factory: Callable, stats: Stats) -> Stats:
    """Dispatch the configured action and time it"""
    ops = ResourceOps(config.resource_type, config.namespace, config.timeout)
    actions = {
        ACTION_CREATE: generate_objects,
        ACTION_LIST: list_objects,
        ACTION_CLEAN: clean_objects,
    }
    stats.start_time = time.time()
    try:
        actions[config.action](config, ops, api_factory, stats)
    finally:
        stats.end_time = time.time()
    return stats


# --- Summary and Main ---

def print_summary(config: Config, stats: Stats):
    """Print summary statistics"""
    logger = logging.getLogger(__name__)
    succeeded, failed = stats.snapshot()

    logger.info("")
    logger.info("=" * 60)
    logger.info("LOAD GENERATION SUMMARY")
    logger.info("=" * 60)
    logger.info("")
    logger.info("Configuration:")
    logger.info(f"  Action: {config.action}")
    logger.info(f"  Resource type: {config.resource_type}")
    logger.info(f"  Namespace: {config.namespace}")
    logger.info(f"  Workers: {config.concurrency}")
    if config.action == ACTION_CREATE:
        logger.info(f"  Objects requested: {config.resource_count}")
        logger.info(f"  Message size: {config.message_size} bytes")
        logger.info(f"  Name prefix: {config.prefix}")
    else:
        logger.info(f"  Page size: {config.list_limit}")

    logger.info("")
    logger.info("Results:")
    logger.info(f"  Succeeded: {succeeded}")
    logger.info(f"  Failed: {failed}")

    logger.info("")
    logger.info("Performance:")
    logger.info(f"  Duration: {stats.duration:.2f} seconds")
    logger.info(f"  Operations per second: {stats.operations_per_second:.2f}")
    logger.info("")
    logger.info("=" * 60)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='''
Generate control plane load by creating, listing or deleting Kubernetes Events or ConfigMaps.

Examples:
  # Create 100000 events (100 workers x 1000 each) in the default namespace
  cpburner --kubeconfig ~/.kube/config create --resource-count 100000

  # Have 50 workers each page through every configmap
  cpburner --resource-type configmap --concurrency 50 list

  # Delete every event in the namespace
  cpburner --kubeconfig ~/.kube/config clean
        ''',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Environment Variables:
  KUBECONFIG               Path to a kubeconfig file (in-cluster config when unset)
  CPBURNER_RESOURCE_TYPE   Resource kind to operate on (default: event)
  CPBURNER_NAMESPACE       Target namespace (default: default)
  CPBURNER_CONCURRENCY     Number of parallel workers (default: 100)
  CPBURNER_LIST_LIMIT      Page size for list calls (default: 10000)
        '''
    )
    # Common arguments
    parser.add_argument('--kubeconfig',
                        default=os.getenv('KUBECONFIG'),
                        help='Absolute path to the kubeconfig file (default: in-cluster configuration)')
    parser.add_argument('--resource-type',
                        choices=RESOURCE_TYPES,
                        default=os.getenv('CPBURNER_RESOURCE_TYPE', RESOURCE_EVENT),
                        help='What kind of resource to operate on (default: event)')
    parser.add_argument('--namespace',
                        default=os.getenv('CPBURNER_NAMESPACE', 'default'),
                        help='Namespace the resources live in (default: default)')
    parser.add_argument('--concurrency',
                        type=int,
                        default=os.getenv('CPBURNER_CONCURRENCY', '100'),
                        help='Number of parallel workers (default: 100)')
    parser.add_argument('--list-limit',
                        type=int,
                        default=os.getenv('CPBURNER_LIST_LIMIT', '10000'),
                        help='Maximum objects per list page (default: 10000)')
    parser.add_argument('--timeout',
                        type=int,
                        default=300,
                        help='Per-request timeout in seconds (default: 300)')
    parser.add_argument('--status-interval',
                        type=float,
                        default=10.0,
                        help='Seconds between status lines (default: 10)')
    parser.add_argument('--log-level',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        default='INFO',
                        help='Logging verbosity level (default: INFO)')

    subparsers = parser.add_subparsers(dest='action', required=True, help='Operation to run (required)')

    parser_create = subparsers.add_parser(
        ACTION_CREATE,
        help='Create resources in bulk',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser_create.add_argument('--resource-count',
                               type=int,
                               default=100000,
                               help='How many resources to generate, split evenly across workers')
    parser_create.add_argument('--message-size',
                               type=int,
                               default=24 * 1024,
                               help='Size in bytes of the random payload stored in each resource')
    parser_create.add_argument('--prefix',
                               default=None,
                               help='Name prefix for created resources (default: evt-<unix time>-<random>)')

    subparsers.add_parser(
        ACTION_LIST,
        help='Page through all resources from every worker'
    )
    subparsers.add_parser(
        ACTION_CLEAN,
        help='Delete all resources of the given kind in the namespace'
    )
    return parser


def config_from_args(args: argparse.Namespace) -> Config:
    config = Config(
        action=args.action,
        resource_type=args.resource_type,
        namespace=args.namespace,
        concurrency=args.concurrency,
        list_limit=args.list_limit,
        timeout=args.timeout,
        status_interval=args.status_interval,
        kubeconfig=args.kubeconfig
    )
    if args.action == ACTION_CREATE:
        config.resource_count = args.resource_count
        config.message_size = args.message_size
        if args.prefix:
            config.prefix = args.prefix
    return config


def main(argv: Optional[List[str]] = None):
    """Main entry point"""
    load_dotenv()
    args = build_parser().parse_args(argv)

    setup_logging(args.log_level)
    logger = logging.getLogger(__name__)

    # Register signal handlers for graceful shutdown
    setup_signal_handlers()

    config = config_from_args(args)
    try:
        validate_config(config)
        configuration = load_cluster_config(config)
    except CpburnerError as e:
        logger.error(str(e))
        sys.exit(1)

    stats = Stats()
    try:
        with StatusReporter(stats, config.status_interval):
            run(config, partial(create_api, configuration), stats)

        if shutdown_event.is_set():
            logger.warning("")
            logger.warning("=" * 60)
            logger.warning("PARTIAL RESULTS (Shutdown requested)")
            logger.warning("=" * 60)
            print_summary(config, stats)
            sys.exit(130)  # Standard exit code for SIGINT

        print_summary(config, stats)
        if stats.failed > 0:
            sys.exit(1)

    except KeyboardInterrupt:
        logger.warning("Forced shutdown (second Ctrl+C)")
        logger.warning("")
        logger.warning("=" * 60)
        logger.warning("PARTIAL RESULTS (Forced shutdown)")
        logger.warning("=" * 60)
        print_summary(config, stats)
        sys.exit(130)
    except Exception as e:
        logger.error(f"Load generation failed: {e}")
        print_summary(config, stats)
        sys.exit(1)


if __name__ == '__main__':
    main()
