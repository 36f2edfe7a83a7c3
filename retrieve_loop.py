"""Retrieve loop that narrows package.xml until the Salesforce CLI accepts it.

The sf CLI ships its own registry of metadata types, which lags behind the
catalog an org reports. Retrieving a type the registry does not know fails
with ``Missing metadata type definition in registry for id '<Type>'``. Each
failing attempt removes the named types from the manifest and tries again;
any other failure ends the run.
"""

import json
import re
import shutil
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum

import click

from manifest_builder import build_manifest, write_manifest
from tool_utils import DEFAULT_MAX_ATTEMPTS, CommandResult, RefreshPlan

MISSING_TYPE_PATTERN = re.compile(
    r"Missing metadata type definition in registry for id '([^']+)'"
)


class LoopState(str, Enum):
    SUCCEEDED = 'succeeded'
    EXHAUSTED_RETRIES = 'exhausted_retries'
    ABORTED = 'aborted'


@dataclass(frozen=True)
class Success:
    """The retrieve command reported status 0."""


@dataclass(frozen=True)
class RetryableFailure:
    """The retrieve failed because the CLI registry lacks these types."""

    missing_types: tuple[str, ...]


@dataclass(frozen=True)
class FatalFailure:
    """The retrieve failed in a way that narrowing the manifest cannot fix."""

    diagnostic: str
    parsed: bool


AttemptOutcome = Success | RetryableFailure | FatalFailure


@dataclass
class RetrieveLoopResult:
    """Terminal state of a retrieve loop run."""

    state: LoopState
    attempts: int
    excluded_types: list[str] = field(default_factory=list)
    diagnostic: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is LoopState.SUCCEEDED


def find_missing_types(diagnostic: str) -> list[str]:
    """Return every type id named by a missing-registry error, in text order."""
    return [match.group(1) for match in MISSING_TYPE_PATTERN.finditer(diagnostic)]


def classify_retrieve_output(raw_output: str) -> AttemptOutcome:
    """Classify the raw output of one ``sf project retrieve start --json`` run."""
    try:
        payload = json.loads(raw_output)
    except (json.JSONDecodeError, TypeError):
        return FatalFailure(raw_output or '', parsed=False)

    if isinstance(payload, dict) and payload.get('status') == 0:
        return Success()

    diagnostic = json.dumps(payload, ensure_ascii=False)
    missing = list(dict.fromkeys(find_missing_types(diagnostic)))
    if missing:
        return RetryableFailure(tuple(missing))
    return FatalFailure(diagnostic, parsed=True)


def _raw_output(result: CommandResult) -> str:
    if result.stdout:
        return result.stdout
    if result.stderr:
        return result.stderr
    return f"Retrieve command failed without output (exit code {result.returncode})."


def _run_attempt(
    plan: RefreshPlan,
    manifest_text: str,
    retrieve: Callable[[RefreshPlan], CommandResult],
) -> AttemptOutcome:
    write_manifest(plan.manifest_path, manifest_text)
    click.echo(click.style(f"✓ package.xml written to {plan.manifest_path}", fg='green'))

    if plan.force_app_main_path.exists():
        click.echo("Removing existing 'force-app/main' directory...")
        shutil.rmtree(plan.force_app_main_path)

    raw_output = _raw_output(retrieve(plan))
    plan.result_path.write_text(raw_output, encoding='utf-8')

    outcome = classify_retrieve_output(raw_output)
    if isinstance(outcome, FatalFailure) and not outcome.parsed:
        click.echo(
            click.style(
                f"Retrieve output could not be parsed as JSON; saved to {plan.result_path}",
                fg='yellow',
            )
        )
    else:
        plan.result_path.unlink()
    return outcome


def retrieve_with_retries(
    plan: RefreshPlan,
    candidates: Sequence[str],
    overrides: Mapping[str, Sequence[str]],
    api_version: str,
    retrieve: Callable[[RefreshPlan], CommandResult],
    seed_exclusions: Iterable[str] = (),
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> RetrieveLoopResult:
    """Retrieve metadata, dropping registry-unknown types until the CLI succeeds.

    The exclusion list only grows. A failure that names no new type ends the
    run as aborted, since retrying the same manifest cannot make progress.
    """
    excluded_types = list(dict.fromkeys(seed_exclusions))
    attempt = 0

    while attempt < max_attempts:
        attempt += 1
        click.echo(
            click.style(f"\n=== Retrieve attempt {attempt} of {max_attempts} ===", bold=True, fg='cyan')
        )
        manifest_text = build_manifest(candidates, excluded_types, overrides, api_version)
        outcome = _run_attempt(plan, manifest_text, retrieve)

        if isinstance(outcome, Success):
            click.echo(click.style("✓ Metadata download complete.", fg='green'))
            return RetrieveLoopResult(LoopState.SUCCEEDED, attempt, excluded_types)

        if isinstance(outcome, FatalFailure):
            click.echo(click.style("Unknown retrieval failure:", fg='red'))
            click.echo(outcome.diagnostic)
            return RetrieveLoopResult(
                LoopState.ABORTED, attempt, excluded_types, outcome.diagnostic
            )

        new_types = [name for name in outcome.missing_types if name not in excluded_types]
        if not new_types:
            message = (
                "Retrieve keeps failing on already excluded types: "
                + ', '.join(outcome.missing_types)
            )
            click.echo(click.style(message, fg='red'))
            return RetrieveLoopResult(LoopState.ABORTED, attempt, excluded_types, message)

        for name in new_types:
            click.echo(click.style(f"Adding '{name}' to the exclude list.", fg='yellow'))
            excluded_types.append(name)

    click.echo(
        click.style(f"Exceeded maximum retry attempts ({max_attempts}).", fg='red')
    )
    return RetrieveLoopResult(LoopState.EXHAUSTED_RETRIES, attempt, excluded_types)
