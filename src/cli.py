#!/usr/bin/env python3
"""CLI entry point for stack-driver.

Noun-action subcommands:
- stack plan -T stack.yaml -p Env=prod
- stack apply -T stack.yaml --auto-approve
- stack destroy -S stack

Nouns:
- stack: Stack lifecycle (plan/apply/destroy/validate/unlock/state)
"""

import logging
import subprocess
import sys
from pathlib import Path

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "stack": "Stack lifecycle (plan/apply/destroy/validate/unlock/state)",
}

STACK_ACTIONS = {
    "plan": "Show changes required to match the template (dry run)",
    "apply": "Apply template changes",
    "destroy": "Delete every resource in the stack",
    "validate": "Validate template structure and parameters",
    "unlock": "Force-release a stack lock by token",
    "state": "Show stored state for a stack",
}


def dispatch_stack(argv: list) -> int:
    """Route 'stack <action>' to its handler in stack_opr.cli.

    Handlers are looked up by name ('plan' -> plan_main) at call time so
    importing this module does not pull in the engine.
    """
    if not argv or argv[0].startswith('-'):
        print("Usage: stack-driver stack <action> [options]")
        print()
        print("Actions:")
        for action, desc in STACK_ACTIONS.items():
            print(f"  {action:<9} {desc}")
        print()
        print("Run 'stack-driver stack <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action, rest = argv[0], argv[1:]
    if action not in STACK_ACTIONS:
        print(f"Error: Unknown stack action '{action}'")
        print(f"Available actions: {', '.join(STACK_ACTIONS)}")
        return 1

    from stack_opr import cli as stack_cli
    handler = getattr(stack_cli, f'{action}_main')
    rc: int = handler(rest)
    return rc


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "stack")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if noun == "stack":
        return dispatch_stack(argv)

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


def get_version():
    """Get version from git tags (do not use hardcoded VERSION constant)."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"stack-driver {get_version()}")
    print()
    print("Usage: stack-driver <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'stack-driver <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  stack-driver stack validate -T s3-tfstate.yaml -p BucketName=acme-tfstate")
    print("  stack-driver stack plan -T s3-tfstate.yaml -p BucketName=acme-tfstate --out plan.json")
    print("  stack-driver stack apply --plan-file plan.json")
    print("  stack-driver stack destroy -S s3-tfstate")


def main(argv=None):
    """CLI entry point: dispatch to noun-action handlers."""
    argv = sys.argv[1:] if argv is None else argv

    if not argv:
        print_usage()
        return 0

    first_arg = argv[0]
    if first_arg in ('--version', '-V'):
        print(f"stack-driver {get_version()}")
        return 0
    if first_arg in ('--help', '-h'):
        print_usage()
        return 0
    if first_arg in NOUN_COMMANDS:
        return dispatch_noun(first_arg, argv[1:])

    print(f"Error: Unknown command '{first_arg}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
