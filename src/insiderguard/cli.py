"""
InsiderGuard command line.

    insiderguard validate policies.yaml
    insiderguard evaluate policies.yaml --event event.json [--json] [--now 2026-01-05T22:00:00]

`evaluate` is a dry run: it resolves, evaluates and plans actions for an
event without touching the database or any collaborator.
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Sequence

import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from insiderguard.config import get_settings
from insiderguard.core.clock import utcnow
from insiderguard.core.errors import (
    ConfigurationError,
    ExitCode,
    PolicyValidationError,
    main_with_error_handling,
)
from insiderguard.domain.models import Policy, TriggerEvent
from insiderguard.policies.evaluator import ConditionTreeResolver, EvaluationContext
from insiderguard.policies.resolver import rank_policies, select_applicable
from insiderguard.scheduling.scheduler import plan_actions

console = Console()


def _load_policy_documents(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        raise ConfigurationError(f"Policy file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text()) or []
    except yaml.YAMLError as exc:
        raise PolicyValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if isinstance(data, dict):
        data = data.get("policies", [])
    if not isinstance(data, list):
        raise PolicyValidationError(f"{path} must contain a list of policies")
    return data


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)


def load_policies(path: Path) -> list[Policy]:
    """Parse and validate every policy; ids default to file position."""
    policies = []
    errors = []
    for index, doc in enumerate(_load_policy_documents(path), start=1):
        try:
            policy = Policy.model_validate(doc)
        except ValidationError as exc:
            name = doc.get("name", f"#{index}") if isinstance(doc, dict) else f"#{index}"
            errors.append(f"{name}: {_format_validation_error(exc)}")
            continue
        if policy.id is None:
            policy = policy.model_copy(update={"id": index})
        policies.append(policy)

    if errors:
        raise PolicyValidationError(
            f"{len(errors)} invalid polic{'y' if len(errors) == 1 else 'ies'}",
            details={"errors": errors},
        )
    return policies


def validate_command(policy_file: str) -> int:
    path = Path(policy_file)
    docs = _load_policy_documents(path)

    table = Table(title=f"Policies in {path.name}")
    table.add_column("Name")
    table.add_column("Level")
    table.add_column("Target")
    table.add_column("Conditions", justify="right")
    table.add_column("Actions", justify="right")
    table.add_column("Status")

    management_recipients = get_settings().management_recipients
    invalid = 0
    for index, doc in enumerate(docs, start=1):
        name = doc.get("name", f"#{index}") if isinstance(doc, dict) else f"#{index}"
        try:
            policy = Policy.model_validate(doc)
        except ValidationError as exc:
            invalid += 1
            table.add_row(str(name), "-", "-", "-", "-", f"[red]{_format_validation_error(exc)}[/red]")
            continue
        unaddressed = policy.unaddressed_escalations(management_recipients)
        if unaddressed:
            invalid += 1
            status = (
                f"[red]actions {', '.join(map(str, unaddressed))} notify management"
                " but no management recipients are configured[/red]"
            )
        else:
            status = "[green]valid[/green]"
        target = f"{policy.target_type.value}:{policy.target_id}" if policy.target_type else "-"
        table.add_row(
            policy.name,
            policy.level.value,
            target,
            str(len(policy.conditions)),
            str(len(policy.actions)),
            status,
        )

    console.print(table)
    if invalid:
        console.print(f"[red]{invalid} of {len(docs)} policies invalid[/red]")
        return ExitCode.VALIDATION_ERROR
    console.print(f"[green]All {len(docs)} policies valid[/green]")
    return ExitCode.SUCCESS


def dry_run(policies: list[Policy], event: TriggerEvent, now: datetime) -> list[dict[str, Any]]:
    """Which policies apply to `event`, whether each fires, and when its actions would run."""
    settings = get_settings()
    context = EvaluationContext.from_event(
        event,
        business_hours_start=settings.business_hours_start,
        business_hours_end=settings.business_hours_end,
    )
    tree = ConditionTreeResolver()

    report = []
    for policy in rank_policies(select_applicable(policies, event.subject, event.kind)):
        fires = tree.resolve(policy.conditions, context)
        report.append(
            {
                "policy_id": policy.id,
                "name": policy.name,
                "level": policy.level.value,
                "priority": policy.priority,
                "fires": fires,
                "conditions": [
                    {"type": c.type.value, "operator": c.operator.value, "value": c.value, "result": r}
                    for c, r in tree.explain(policy.conditions, context)
                ],
                "actions": [
                    {
                        "order": p.action.order,
                        "type": p.action.type,
                        "scheduled_at": p.scheduled_at.isoformat(),
                    }
                    for p in plan_actions(policy, now)
                ]
                if fires
                else [],
            }
        )
    return report


def evaluate_command(
    policy_file: str, event_file: str, *, as_json: bool = False, now: str | None = None
) -> int:
    policies = load_policies(Path(policy_file))

    event_path = Path(event_file)
    if not event_path.exists():
        raise ConfigurationError(f"Event file not found: {event_path}")
    try:
        event = TriggerEvent.model_validate(json.loads(event_path.read_text()))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise PolicyValidationError(f"Invalid event in {event_path}: {exc}") from exc

    report = dry_run(policies, event, datetime.fromisoformat(now) if now else utcnow())

    if as_json:
        print(json.dumps({"trigger_event_id": event.id, "policies": report}, indent=2))
        return ExitCode.SUCCESS

    if not report:
        console.print("[yellow]No applicable policies (event would be rejected)[/yellow]")
        return ExitCode.SUCCESS

    table = Table(title=f"Event {event.id} ({event.kind.value}) for {event.subject.user_id}")
    table.add_column("Priority", justify="right")
    table.add_column("Policy")
    table.add_column("Level")
    table.add_column("Fires")
    table.add_column("Actions")
    for entry in report:
        actions = "\n".join(f"{a['order']}. {a['type']} @ {a['scheduled_at']}" for a in entry["actions"])
        table.add_row(
            str(entry["priority"]),
            entry["name"],
            entry["level"],
            "[green]yes[/green]" if entry["fires"] else "[dim]no[/dim]",
            actions or "-",
        )
    console.print(table)
    return ExitCode.SUCCESS


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="insiderguard", description="InsiderGuard policy engine CLI")
    subparsers = parser.add_subparsers(dest="command")

    validate_parser = subparsers.add_parser("validate", help="Validate a YAML policy file")
    validate_parser.add_argument("policy_file", help="Path to policies YAML")

    evaluate_parser = subparsers.add_parser(
        "evaluate", help="Dry-run an event against a YAML policy file"
    )
    evaluate_parser.add_argument("policy_file", help="Path to policies YAML")
    evaluate_parser.add_argument("--event", required=True, help="Path to trigger event JSON")
    evaluate_parser.add_argument("--json", action="store_true", help="Machine-readable output")
    evaluate_parser.add_argument("--now", help="Override the current time (ISO 8601, UTC)")

    return parser


@main_with_error_handling()
def run(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "validate":
        return validate_command(args.policy_file)
    if args.command == "evaluate":
        return evaluate_command(args.policy_file, args.event, as_json=args.json, now=args.now)

    parser.print_help()
    return ExitCode.SUCCESS


def main(argv: Sequence[str] | None = None) -> None:
    sys.exit(run(argv))


if __name__ == "__main__":
    main()
