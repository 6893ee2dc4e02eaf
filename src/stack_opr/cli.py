"""CLI handlers for stack verb commands (plan, apply, destroy, validate, unlock, state).

Usage:
    stack-driver stack plan -T <template> [-p KEY=VALUE ...] [--out plan.json] [--json-output]
    stack-driver stack apply -T <template> [-p KEY=VALUE ...] [--auto-approve] [--plan-file plan.json]
    stack-driver stack destroy -S <stack> [--yes] [--dry-run]
    stack-driver stack validate -T <template> [-p KEY=VALUE ...]
    stack-driver stack unlock -S <stack> <token>
    stack-driver stack state -S <stack> [show]

Exit codes: 0 success (plan: no changes), 1 error, 2 plan has changes.
"""

import argparse
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from common import fingerprint, to_jsonable
from config import ConfigError, EngineConfig, load_engine_config, load_params_file
from errors import EngineError, TemplateError
from reporting import ApplyReport
from stack_opr.executor import ApplyExecutor, ApplyResult
from stack_opr.graph import ResourceGraph
from stack_opr.lock import LockManager
from stack_opr.plan import Plan, PlanEngine
from stack_opr.providers import build_registry
from stack_opr.state import StateSnapshot
from stack_opr.store import StateStore, build_store
from template import Template, load_template
from validation import validate_template

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CHANGES = 2


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'stack-driver stack {verb}',
        description=description,
    )
    parser.add_argument(
        '--stack', '-S',
        help='Stack name (default: template file name without extension)',
    )
    parser.add_argument(
        '--config',
        help='Engine config file (default: $STACK_DRIVER_CONFIG or ./stack-driver.yaml)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def _add_template_args(parser: argparse.ArgumentParser, required: bool = True) -> None:
    group = parser.add_mutually_exclusive_group(required=required)
    group.add_argument(
        '--template', '-T',
        help='Template file (YAML or JSON)',
    )
    group.add_argument(
        '--template-json',
        help='Inline template JSON',
    )
    parser.add_argument(
        '--param', '-p',
        action='append',
        default=[],
        metavar='KEY=VALUE',
        help='Parameter value (repeatable)',
    )
    parser.add_argument(
        '--params-file',
        help='YAML/JSON file with parameter values (-p overrides)',
    )


def _add_engine_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--refresh',
        action='store_true',
        default=None,
        help='Read back provider-side state before planning (drift detection)',
    )
    parser.add_argument(
        '--parallelism',
        type=int,
        help='Max concurrent provider calls (default from config: 4)',
    )


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _emit_json(payload: dict) -> None:
    """Emit structured JSON output."""
    print(json.dumps(to_jsonable(payload), indent=2))


def _error(e: Exception) -> int:
    print(f"Error: {e}", file=sys.stderr)
    return EXIT_ERROR


def _parse_params(args) -> dict:
    """Merge --params-file and -p KEY=VALUE (the latter wins).

    Raises:
        ConfigError: On malformed -p values or unreadable params file
    """
    params: dict = {}
    if args.params_file:
        params.update(load_params_file(args.params_file))
    for item in args.param:
        if '=' not in item:
            raise ConfigError(f"Invalid parameter '{item}': expected KEY=VALUE")
        key, value = item.split('=', 1)
        params[key.strip()] = value
    return params


def _load_config(args) -> EngineConfig:
    config = load_engine_config(args.config)
    if getattr(args, 'parallelism', None) is not None:
        if args.parallelism < 1:
            raise ConfigError(f"--parallelism must be >= 1, got {args.parallelism}")
        config.parallelism = args.parallelism
    if getattr(args, 'refresh', None):
        config.refresh = True
    return config


def _stack_name(args, template: Optional[Template]) -> str:
    if args.stack:
        return args.stack
    if template is not None and template.source_path is not None:
        return template.source_path.stem
    raise ConfigError("Cannot infer stack name; pass --stack")


def _lock_manager(config: EngineConfig, store: StateStore, stack: str) -> LockManager:
    return LockManager(store, stack, expiry_seconds=config.lock_expiry_seconds)


def _acquire(config: EngineConfig, lock: LockManager) -> None:
    lock.acquire_with_retry(config.lock_retries, config.lock_retry_delay)


def _registry_types(graph: Optional[ResourceGraph], snapshot: StateSnapshot) -> set[str]:
    types = {r.type for r in snapshot.resources.values()}
    if graph is not None:
        types |= {n.type for n in graph.nodes.values()}
    return types


def _print_plan(plan: Plan) -> None:
    """Human-readable plan, in execution order."""
    title = 'DESTROY PLAN' if plan.destroy else 'PLAN'
    print("")
    print("=" * 65)
    print(f"  {title}: {plan.stack}")
    print(f"  State version: {plan.state_version}")
    print("=" * 65)
    print("")

    if plan.drift:
        print("  Drift detected:")
        for record in plan.drift:
            print(f"    ~ {record.logical_id}: {record.status}")
        print("")

    symbols = {'no-op': ' ', 'create': '+', 'update': '~', 'replace': '±', 'delete': '-'}
    for entry in plan.entries:
        if not entry.is_change:
            continue
        print(f"  {symbols[entry.action]} {entry.logical_id}: {entry.label} ({entry.resource_type})")
        if entry.reason:
            print(f"      reason: {entry.reason}")
        for change in entry.changes:
            if change.added:
                print(f"      + {change.name} = {to_jsonable(change.after)}")
            elif change.removed:
                print(f"      - {change.name}")
            else:
                print(f"      ~ {change.name}: {to_jsonable(change.before)} -> {to_jsonable(change.after)}")

    summary = plan.summary()
    unchanged = summary.pop('no-op', 0)
    if summary:
        counts = ', '.join(f"{n} to {label}" for label, n in sorted(summary.items()))
        print(f"\n  Plan: {counts} ({unchanged} unchanged)")
    else:
        print("  No changes. Infrastructure matches the template.")
    print("")


def _print_result(result: ApplyResult) -> None:
    marks = {'succeeded': '✓', 'failed': '✗', 'skipped': '-', 'cancelled': '-'}
    print("")
    for lid, entry in result.entries.items():
        line = f"  {marks.get(entry.status, '?')} {lid}: {entry.action} {entry.status}"
        if entry.error:
            line += f" ({entry.error})"
        print(line)
    if result.outputs:
        print("\n  Outputs:")
        for name, value in result.outputs.items():
            print(f"    {name} = {value}")
    if result.aborted is not None:
        print(f"\n  Aborted: {result.aborted}")
    print(f"\n  {len(result.succeeded)} succeeded, {len(result.failed)} failed, "
          f"{len(result.skipped)} skipped, {len(result.cancelled_entries)} cancelled")
    print("")


def _confirm(prompt: str) -> bool:
    response = input(f"{prompt} [y/N] ").strip().lower()
    return response == 'y'


def _run_apply(executor: ApplyExecutor, plan: Plan, config: EngineConfig,
               verb: str) -> tuple[ApplyResult, bool]:
    """Run the executor with SIGINT mapped to cancellation, writing a report if configured.

    Returns:
        (result, report_written); report_written is False if report files
        could not be written after the run

    Raises:
        ConfigError: If the report directory cannot be created (nothing is
            executed, the lock is released)
    """
    report = None
    if config.report_dir is not None:
        report = ApplyReport(stack=plan.stack, report_dir=config.report_dir, verb=verb)
        try:
            report.start(plan.to_dict())
        except OSError as e:
            executor.lock.release()
            raise ConfigError(f"Cannot create report directory {config.report_dir}: {e}")

    def _handle_sigint(_signum, _frame):
        executor.cancel()

    previous = signal.signal(signal.SIGINT, _handle_sigint)
    try:
        result = executor.apply(plan)
    finally:
        signal.signal(signal.SIGINT, previous)

    if report is not None:
        try:
            paths = report.finish(result.to_dict())
        except OSError as e:
            logger.error(f"Cannot write report to {config.report_dir}: {e}")
            return result, False
        for path in paths:
            logger.info(f"Report written to {path}")
    return result, True


def plan_main(argv: list) -> int:
    """Handle 'stack plan' verb."""
    parser = _common_parser('plan', 'Show changes required to match the template (dry run)')
    _add_template_args(parser)
    _add_engine_args(parser)
    parser.add_argument(
        '--out',
        help='Write the plan to a file for a later apply --plan-file',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = _load_config(args)
        template = load_template(file_path=args.template, json_str=args.template_json)
        graph = ResourceGraph(template, _parse_params(args), config.pseudo_parameters)
        stack = _stack_name(args, template)
        store = build_store(config)
        lock = _lock_manager(config, store, stack)

        _acquire(config, lock)
        try:
            snapshot = StateSnapshot.load(store, stack)
            registry = build_registry(config, _registry_types(graph, snapshot))
            plan = PlanEngine(snapshot, registry, graph, refresh=config.refresh).plan()
        finally:
            lock.release()
    except (EngineError, ConfigError) as e:
        return _error(e)

    if args.out:
        path = plan.save(Path(args.out))
        logger.info(f"Plan saved to {path}")

    if args.json_output:
        _emit_json(plan.to_dict())
    else:
        _print_plan(plan)

    return EXIT_CHANGES if plan.has_changes else EXIT_OK


def apply_main(argv: list) -> int:
    """Handle 'stack apply' verb."""
    parser = _common_parser('apply', 'Apply template changes to the stack')
    _add_template_args(parser, required=False)
    _add_engine_args(parser)
    parser.add_argument(
        '--plan-file',
        help='Apply a plan saved with plan --out (rejected if state moved)',
    )
    parser.add_argument(
        '--auto-approve',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = _load_config(args)
        saved = None
        if args.plan_file:
            try:
                saved = Plan.load(Path(args.plan_file))
            except (OSError, ValueError) as e:
                raise ConfigError(f"Cannot load plan file {args.plan_file}: {e}")

        template_path = args.template or (saved.template_path if saved else None)
        if not template_path and not args.template_json:
            raise ConfigError("specify a template with -T or --template-json")
        template = load_template(file_path=template_path, json_str=args.template_json)

        params = _parse_params(args)
        if saved is not None:
            params = {**saved.parameters, **params}
            if fingerprint(template.raw) != saved.template_fingerprint:
                raise TemplateError("Template changed since the plan was saved; re-run plan")

        graph = ResourceGraph(template, params, config.pseudo_parameters)
        stack = saved.stack if saved else _stack_name(args, template)
        store = build_store(config)
        lock = _lock_manager(config, store, stack)

        _acquire(config, lock)
        try:
            snapshot = StateSnapshot.load(store, stack)
            registry = build_registry(config, _registry_types(graph, snapshot))
            plan = saved or PlanEngine(snapshot, registry, graph, refresh=config.refresh).plan()

            if not args.json_output:
                _print_plan(plan)
            if not plan.has_changes:
                lock.release()
                if args.json_output:
                    _emit_json({'stack': stack, 'success': True, 'changes': False})
                return EXIT_OK
            if saved is None and not args.auto_approve and not args.json_output:
                if not _confirm("Apply these changes?"):
                    print("Aborted.")
                    lock.release()
                    return EXIT_ERROR
        except BaseException:
            if lock.held:
                lock.release()
            raise

        executor = ApplyExecutor(
            snapshot=snapshot,
            store=store,
            registry=registry,
            lock=lock,
            graph=graph,
            parallelism=config.parallelism,
        )
        result, report_written = _run_apply(executor, plan, config, 'apply')
    except (EngineError, ConfigError) as e:
        return _error(e)

    if args.json_output:
        _emit_json(result.to_dict())
    else:
        _print_result(result)

    return EXIT_OK if result.success and report_written else EXIT_ERROR


def destroy_main(argv: list) -> int:
    """Handle 'stack destroy' verb."""
    parser = _common_parser('destroy', 'Delete every resource in the stack')
    _add_engine_args(parser)
    parser.add_argument(
        '--template', '-T',
        help='Template file (only used to infer the stack name)',
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Show the destroy plan without executing',
    )
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = _load_config(args)
        stack = args.stack or (Path(args.template).stem if args.template else None)
        if not stack:
            raise ConfigError("specify the stack with -S (or -T to infer it)")
        store = build_store(config)
        lock = _lock_manager(config, store, stack)

        _acquire(config, lock)
        try:
            snapshot = StateSnapshot.load(store, stack)
            registry = build_registry(config, _registry_types(None, snapshot))
            plan = PlanEngine(snapshot, registry, refresh=config.refresh).plan()

            if not args.json_output:
                _print_plan(plan)
            if args.dry_run or not plan.has_changes:
                lock.release()
                if args.json_output:
                    _emit_json(plan.to_dict())
                return EXIT_OK

            if not args.yes and not args.json_output:
                print(f"\nWARNING: This will destroy all resources in stack '{stack}'.")
                print("Resources with DeletionPolicy: Retain are kept and only removed from state.")
                print("This action cannot be undone.")
                if not _confirm("Continue?"):
                    print("Aborted.")
                    lock.release()
                    return EXIT_ERROR
        except BaseException:
            if lock.held:
                lock.release()
            raise

        logger.info(f"Destroying stack '{stack}'")
        executor = ApplyExecutor(
            snapshot=snapshot,
            store=store,
            registry=registry,
            lock=lock,
            parallelism=config.parallelism,
        )
        result, report_written = _run_apply(executor, plan, config, 'destroy')
    except (EngineError, ConfigError) as e:
        return _error(e)

    if args.json_output:
        _emit_json(result.to_dict())
    else:
        _print_result(result)

    return EXIT_OK if result.success and report_written else EXIT_ERROR


def validate_main(argv: list) -> int:
    """Handle 'stack validate' verb.

    Checks template structure and references without touching state:
    - Section / resource / parameter schema (on load)
    - Dangling Ref / GetAtt / Sub / DependsOn targets and unknown conditions
    - Parameter constraints, conditions and dependency cycles, once every
      required parameter has a value
    """
    parser = _common_parser('validate', 'Validate template structure and parameters')
    _add_template_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = _load_config(args)
        template = load_template(file_path=args.template, json_str=args.template_json)
        params = _parse_params(args)
    except (EngineError, ConfigError) as e:
        return _error(e)

    errors = validate_template(template, config.pseudo_parameters)
    missing = [name for name, decl in template.parameters.items()
               if decl.required and name not in params]

    graph = None
    if not errors and not missing:
        try:
            graph = ResourceGraph(template, params, config.pseudo_parameters)
        except EngineError as e:
            errors.append(str(e))
    elif missing:
        logger.info(f"Skipping graph check; no value for: {', '.join(missing)}")

    if args.json_output:
        payload = {'valid': not errors, 'errors': errors}
        if missing:
            payload['missing_parameters'] = missing
        if graph is not None:
            payload['resources'] = [n.logical_id for n in graph.create_order()]
        _emit_json(payload)
        return EXIT_ERROR if errors else EXIT_OK

    name = template.source_path.name if template.source_path else 'template'
    if errors:
        print(f"Template '{name}' has {len(errors)} validation error(s):", file=sys.stderr)
        for error in errors:
            print(f"  ✗ {error}", file=sys.stderr)
        return EXIT_ERROR

    count = len(graph) if graph is not None else len(template.resources)
    print(f"Template '{name}' is valid ({count} resource{'s' if count != 1 else ''})")
    return EXIT_OK


def unlock_main(argv: list) -> int:
    """Handle 'stack unlock' verb (operator recovery after a crashed apply)."""
    parser = _common_parser('unlock', 'Force-release a stack lock by its token')
    parser.add_argument('token', type=int, help='Fencing token of the lock to release')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    if not args.stack:
        return _error(ConfigError("specify the stack with -S"))
    try:
        config = _load_config(args)
        lock = _lock_manager(config, build_store(config), args.stack)
        released = lock.force_unlock(args.token)
    except (EngineError, ConfigError) as e:
        return _error(e)

    if args.json_output:
        _emit_json({'stack': args.stack, 'released': released})
    elif released:
        print(f"Lock on '{args.stack}' released (token {args.token})")
    else:
        print(f"Stack '{args.stack}' is not locked")
    return EXIT_OK


def state_main(argv: list) -> int:
    """Handle 'stack state' verb: show the stored snapshot and lock."""
    parser = _common_parser('state', 'Show stored state for a stack')
    parser.add_argument('action', nargs='?', default='show', choices=['show'])
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    if not args.stack:
        return _error(ConfigError("specify the stack with -S"))
    try:
        config = _load_config(args)
        store = build_store(config)
        snapshot = StateSnapshot.load(store, args.stack)
        lock = _lock_manager(config, store, args.stack).current()
    except (EngineError, ConfigError) as e:
        return _error(e)

    if args.json_output:
        payload = snapshot.to_dict()
        payload['version'] = snapshot.version
        payload['lock'] = lock.to_dict() if lock else None
        _emit_json(payload)
        return EXIT_OK

    print(f"Stack: {args.stack}")
    print(f"Version: {snapshot.version}  Serial: {snapshot.serial}  Lineage: {snapshot.lineage}")
    if lock is not None and not lock.released:
        print(f"Lock: held by {lock.holder} (token {lock.token})")
    else:
        print("Lock: none")
    if not len(snapshot):
        print("No resources.")
    for lid, res in snapshot.resources.items():
        retain = ' [retain]' if res.retain_on_delete else ''
        print(f"  {lid}: {res.type} {res.physical_id}{retain}")
    for name, value in snapshot.outputs.items():
        print(f"  output {name} = {value}")
    return EXIT_OK
