#!/usr/bin/env python3
"""CLI entry point for deskrun.

Commands:
- add / remove / list: manage configured installations
- render: compile an installation's manifests to stdout
- up: reconcile the cluster with configured installations
- down: delete every deployed runner
- status: cluster, controller and runner overview
- preflight: check host tooling and credentials
- cluster: create / delete / status of the kind cluster
"""

import argparse
import json
import logging
import signal
import sys
import threading
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

from cluster import ARC_SCHEMA_EXTENSION, KappApplier, KindProvisioner, KubectlProbe, detect_host_mounts
from config import ConfigError, get_config_dir, load_driver_config
from errors import CancelledError, CompileError, DeskrunError
from installation import CacheMount, InstallationSpec
from reconciler import ControllerBootstrapper, Reconciler, expand
from store import InstallationStore
from templating import TemplateCompiler
from validation import format_preflight_results, run_preflight_checks

logger = logging.getLogger(__name__)


def get_version() -> str:
    try:
        return version('deskrun')
    except PackageNotFoundError:
        return 'dev'


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags.

    With --json, stdout carries only the JSON document and logs go to stderr.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        stream=sys.stderr if json_output else sys.stdout,
        force=True,
    )


def _emit(data: dict) -> None:
    print(json.dumps(data, indent=2))


def _fail(message: str) -> int:
    print(f"Error: {message}", file=sys.stderr)
    return 1


# ---------------------------------------------------------------------------
# Installations
# ---------------------------------------------------------------------------

def cmd_add(args, config, store) -> int:
    spec = InstallationSpec(
        name=args.name,
        repository=args.repository,
        container_mode=args.mode,
        min_replicas=args.min_runners,
        max_replicas=args.max_runners,
        instance_count=args.instances,
        cache_mounts=[CacheMount.parse(c) for c in args.cache or []],
        auth_method=args.auth_type,
        auth_secret=args.auth_value or '',
    )
    store.add(spec)
    logger.info(f"Added installation '{spec.name}' ({spec.container_mode.value})")
    if args.json:
        _emit({'added': spec.name})
    return 0


def cmd_remove(args, config, store) -> int:
    spec = store.remove(args.name)
    logger.info(f"Removed installation '{spec.name}'; run 'deskrun up' to delete its runners")
    if args.json:
        _emit({'removed': spec.name})
    return 0


def cmd_list(args, config, store) -> int:
    specs, invalid = store.entries()
    for error in invalid.values():
        print(f"Error: {error}", file=sys.stderr)
    status = 1 if invalid else 0
    if args.json:
        installations = []
        for spec in specs:
            d = spec.to_dict()
            d.pop('auth_value')
            d['instance_names'] = [i.name for i in expand(spec, config)]
            installations.append(d)
        _emit({'installations': installations})
        return status

    if not specs:
        print("No installations configured")
        return status
    print(f"{'NAME':<24} {'MODE':<30} {'RUNNERS':<9} {'INSTANCES':<10} REPOSITORY")
    for spec in specs:
        runners = f"{spec.min_replicas}-{spec.max_replicas}"
        print(f"{spec.name:<24} {spec.container_mode.value:<30} {runners:<9} {spec.instance_count:<10} {spec.repository}")
    return status


def cmd_render(args, config, store) -> int:
    spec = store.get(args.name)
    instances = expand(spec, config)
    if args.instance is not None:
        instances = [i for i in instances if i.ordinal == args.instance]
        if not instances:
            return _fail(f"Installation '{spec.name}' has no instance {args.instance}")

    compiler = TemplateCompiler(config)
    rendered = []
    for instance in instances:
        manifest = compiler.compile(instance)
        rendered.append((instance.name, manifest))

    if args.json:
        _emit({name: m.documents for name, m in rendered})
    else:
        for _, manifest in rendered:
            sys.stdout.write(manifest.to_yaml())
    return 0


# ---------------------------------------------------------------------------
# Cluster operations
# ---------------------------------------------------------------------------

def _build_reconciler(config) -> Reconciler:
    applier = KappApplier(config)
    return Reconciler(
        applier=applier,
        provisioner=KindProvisioner(config),
        bootstrapper=ControllerBootstrapper(applier, KubectlProbe(config), config),
        config=config,
    )


def _install_cancel_handler() -> threading.Event:
    """First SIGINT/SIGTERM stops new work; running operations finish."""
    cancel = threading.Event()

    def handle_signal(signum, frame):
        logger.warning(f"Received signal {signum}, finishing running operations...")
        cancel.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)
    return cancel


def _report(args, result) -> None:
    if args.json:
        _emit(result.to_dict())
        return
    for error in result.errors:
        print(f"✗ {error}")
    for outcome in result.outcomes:
        marker = '✓' if outcome.succeeded else ('✗' if outcome.status == 'failed' else '-')
        line = f"{marker} {outcome.name:<28} {outcome.operation:<8} {outcome.status}"
        if outcome.error:
            line += f": {outcome.error}"
        print(line)
    print(result.summary())


def cmd_up(args, config, store) -> int:
    specs, unreadable = store.entries()
    reconciler = _build_reconciler(config)
    cancel = _install_cancel_handler()
    try:
        result = reconciler.reconcile(specs, cancel, unreadable=unreadable)
    except CancelledError as e:
        logger.error(str(e))
        if e.result is not None:
            _report(args, e.result)
        return 1
    _report(args, result)
    return 0 if result.success else 1


def cmd_down(args, config, store) -> int:
    reconciler = _build_reconciler(config)
    if not reconciler.provisioner.exists():
        logger.info(f"Cluster '{config.cluster_name}' does not exist, nothing to delete")
        return 0
    deployed = [app.name for app in reconciler.applier.list()]
    if not deployed:
        logger.info("No runners deployed")
    result = reconciler.converge([], deployed, _install_cancel_handler())
    _report(args, result)
    return 0 if result.success else 1


def cmd_status(args, config, store) -> int:
    provisioner = KindProvisioner(config)
    status: dict = {
        'cluster': config.cluster_name,
        'context': provisioner.connection_handle(),
        'cluster_exists': provisioner.exists(),
        'controller_ready': False,
        'configured': [i.name for spec in store.list() for i in expand(spec, config)],
        'deployed': [],
    }
    if status['cluster_exists']:
        status['controller_ready'] = KubectlProbe(config).exists(ARC_SCHEMA_EXTENSION)
        status['deployed'] = [app.name for app in KappApplier(config).list()]

    if args.json:
        _emit(status)
        return 0

    print(f"Cluster:    {status['cluster']} ({'running' if status['cluster_exists'] else 'absent'})")
    if not status['cluster_exists']:
        return 0
    print(f"Controller: {'ready' if status['controller_ready'] else 'not installed'}")
    deployed = set(status['deployed'])
    configured = set(status['configured'])
    for name in status['configured']:
        print(f"  {'✓' if name in deployed else '✗'} {name}")
    for name in status['deployed']:
        if name not in configured:
            print(f"  ? {name} (not configured, removed by next 'up')")
    return 0


def cmd_preflight(args, config, store) -> int:
    success, results = run_preflight_checks(store, config, check_access=not args.skip_access)
    if args.json:
        _emit({'success': success, 'results': results})
    else:
        print(format_preflight_results(results))
    return 0 if success else 1


def cmd_cluster(args, config, store) -> int:
    if args.action == 'create':
        cache_dir = Path(config.cache_root) if config.cache_root else None
        provisioner = KindProvisioner(config, detect_host_mounts(cache_dir))
        provisioner.create()
        if args.json:
            _emit({'cluster': provisioner.name, 'context': provisioner.connection_handle()})
        return 0

    provisioner = KindProvisioner(config)
    if args.action == 'delete':
        provisioner.delete()
        logger.info(f"Cluster '{provisioner.name}' deleted")
        return 0

    exists = provisioner.exists()
    if args.json:
        _emit({'cluster': provisioner.name, 'exists': exists})
    else:
        print(f"{provisioner.name}: {'running' if exists else 'absent'}")
    return 0


COMMANDS = {
    'add': cmd_add,
    'remove': cmd_remove,
    'list': cmd_list,
    'render': cmd_render,
    'up': cmd_up,
    'down': cmd_down,
    'status': cmd_status,
    'preflight': cmd_preflight,
    'cluster': cmd_cluster,
}


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    common.add_argument('--json', action='store_true', help='Output structured JSON to stdout (logs to stderr)')
    common.add_argument('--config-dir', type=Path, help='Configuration directory (default: $DESKRUN_CONFIG_DIR or ~/.deskrun)')

    parser = argparse.ArgumentParser(
        prog='deskrun',
        description='Run GitHub Actions runner scale sets on a local kind cluster',
    )
    parser.add_argument('--version', action='version', version=f'deskrun {get_version()}')
    sub = parser.add_subparsers(dest='command', metavar='<command>')

    add = sub.add_parser('add', parents=[common], help='Add a runner installation')
    add.add_argument('name')
    add.add_argument('--repository', '-r', required=True, help='https://github.com/owner/repo')
    add.add_argument('--mode', '-m', default='kubernetes',
                     choices=['kubernetes', 'dind', 'cached-privileged-kubernetes'],
                     help='Container mode (default: kubernetes)')
    add.add_argument('--min-runners', type=int, default=1)
    add.add_argument('--max-runners', type=int, default=5)
    add.add_argument('--instances', type=int, default=1,
                     help='Independent scale sets, each with exactly one runner')
    add.add_argument('--cache', action='append', metavar='[SRC:]TARGET',
                     help='Cache path (repeatable); cached-privileged-kubernetes only')
    add.add_argument('--auth-type', default='pat', choices=['pat', 'github-app'])
    add.add_argument('--auth-value', help='Token or GitHub App private key')

    remove = sub.add_parser('remove', parents=[common], help='Remove a runner installation')
    remove.add_argument('name')

    sub.add_parser('list', parents=[common], help='List configured installations')

    render = sub.add_parser('render', parents=[common], help='Print compiled manifests')
    render.add_argument('name')
    render.add_argument('--instance', type=int, help='Only this instance ordinal')

    sub.add_parser('up', parents=[common], help='Converge the cluster with configured installations')
    sub.add_parser('down', parents=[common], help='Delete every deployed runner')
    sub.add_parser('status', parents=[common], help='Show cluster and runner status')

    preflight = sub.add_parser('preflight', parents=[common], help='Check host tooling and credentials')
    preflight.add_argument('--skip-access', action='store_true', help='Do not query the GitHub API')

    cluster = sub.add_parser('cluster', parents=[common], help='Manage the kind cluster')
    cluster.add_argument('action', choices=['create', 'delete', 'status'])

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    verbose = args.verbose
    try:
        config_dir = args.config_dir or get_config_dir()
        # verbose: true in settings.yaml has the same effect as --verbose
        config = load_driver_config(config_dir, verbose=args.verbose or None)
        verbose = config.verbose
        _setup_logging(verbose, args.json)
        store = InstallationStore(config_dir)
        return COMMANDS[args.command](args, config, store)
    except CompileError as e:
        return _fail(e.verbose() if verbose else str(e))
    except (ConfigError, DeskrunError) as e:
        return _fail(str(e))


if __name__ == '__main__':
    sys.exit(main())
