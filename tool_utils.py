"""Utility helpers for Salesforce metadata refresh workflows."""

import configparser
import datetime
import json
import os
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

import click

LOGIN_URLS = {
    'prod': 'https://login.salesforce.com',
    'sandbox': 'https://test.salesforce.com',
}
PROJECT_MARKER_FILENAME = 'sfdx-project.json'
DEFAULT_MAX_ATTEMPTS = 50
DEFAULT_RETRIEVE_TIMEOUT = 3600
DEFAULT_REQUEST_TIMEOUT = 30
# On Windows the sf CLI is a .cmd shim that only resolves through the shell.
USE_SHELL = os.name == 'nt'


@dataclass
class CommandResult:
    """Outcome of executing a subprocess command."""

    success: bool
    returncode: int | None
    stdout: str | None
    duration_seconds: float
    stderr: str | None = None


@dataclass
class RefreshSettings:
    """Validated tool options read from config.ini."""

    api_version: str = ''
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retrieve_timeout: int = DEFAULT_RETRIEVE_TIMEOUT
    request_timeout: int = DEFAULT_REQUEST_TIMEOUT
    exclude_types: list[str] = field(default_factory=list)
    supplemental_types: list[str] = field(default_factory=list)
    enumerate_members: bool = True


@dataclass
class RefreshPlan:
    """Paths used while refreshing the metadata of a project."""

    project_path: Path
    manifest_path: Path
    force_app_main_path: Path
    result_path: Path


def run_command(
    command: list[str],
    cwd: Path = None,
    capture_output: bool = False,
    check: bool = True,
    timeout: float | None = None,
) -> CommandResult:
    """Run a command with structured logging and status reporting.

    ``timeout`` only applies when ``capture_output`` is set; a command that
    runs past it is reported as a failure with a plain-text diagnostic.
    """

    command_str = subprocess.list2cmdline(command) if USE_SHELL else shlex.join(command)
    args = command_str if USE_SHELL else command
    start = datetime.datetime.now()
    click.echo(
        click.style(
            f"\n[{start:%H:%M:%S}] > Executing: {command_str}",
            fg='yellow',
        )
    )

    try:
        if capture_output:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                encoding='utf-8',
                errors='replace',
                shell=USE_SHELL,
                check=check,
                cwd=cwd,
                timeout=timeout,
            )
            duration = (datetime.datetime.now() - start).total_seconds()
            success = result.returncode == 0
            if not success:
                click.echo(
                    click.style(
                        f"✗ Command returned non-zero exit code {result.returncode}.",
                        fg='red',
                    )
                )
            return CommandResult(
                success, result.returncode, result.stdout, duration, result.stderr
            )

        process = subprocess.Popen(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding='utf-8',
            errors='replace',
            cwd=cwd,
            shell=USE_SHELL,
        )
        stdout_lines: list[str] = []
        for line in iter(process.stdout.readline, ''):
            # The sf CLI redraws spinners with carriage returns; drop them so
            # output is appended line by line.
            sanitized_line = line.replace('\r', '')
            stdout_lines.append(sanitized_line)
            print(sanitized_line, end='')
        process.wait()
        duration = (datetime.datetime.now() - start).total_seconds()
        if process.returncode != 0 and check:
            raise subprocess.CalledProcessError(process.returncode, command)

        success = process.returncode == 0
        click.echo(
            click.style(f"✓ Command successful. (took {duration:.2f}s)", fg='green')
            if success
            else click.style(
                f"✗ Command returned code {process.returncode} (took {duration:.2f}s)",
                fg='red',
            )
        )
        return CommandResult(success, process.returncode, ''.join(stdout_lines), duration)

    except subprocess.TimeoutExpired:
        duration = (datetime.datetime.now() - start).total_seconds()
        message = f"Command timed out after {timeout}s: {command_str}"
        click.echo(click.style(f"✗ {message}", fg='red'))
        return CommandResult(False, None, None, duration, message)
    except subprocess.CalledProcessError as e:
        duration = (datetime.datetime.now() - start).total_seconds()
        click.echo(
            click.style(
                f"✗ Command failed after {duration:.2f}s (exit {e.returncode}).",
                fg='red',
            )
        )
        return CommandResult(False, e.returncode, e.stdout, duration, e.stderr)
    except OSError as e:
        duration = (datetime.datetime.now() - start).total_seconds()
        click.echo(
            click.style(
                f"✗ An unexpected error occurred after {duration:.2f}s: {e}",
                fg='red',
            )
        )
        return CommandResult(False, None, None, duration, str(e))


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(',') if item.strip()]


def _read_int(parser: configparser.ConfigParser, key: str, default: int, minimum: int) -> int:
    try:
        value = parser.getint('ToolOptions', key, fallback=default)
    except ValueError:
        raise click.ClickException(
            f"Invalid value for 'ToolOptions.{key}': expected an integer."
        ) from None
    if value < minimum:
        raise click.ClickException(
            f"Invalid value for 'ToolOptions.{key}': must be at least {minimum}."
        )
    return value


def read_config(config_path: Path) -> RefreshSettings:
    """Read the optional INI tool options, falling back to defaults."""

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding='utf-8')

    try:
        enumerate_members = parser.getboolean(
            'ToolOptions', 'enumerate_members', fallback=True
        )
    except ValueError:
        raise click.ClickException(
            "Invalid value for 'ToolOptions.enumerate_members': expected true or false."
        ) from None

    return RefreshSettings(
        api_version=parser.get('ToolOptions', 'api_version', fallback='').strip(),
        max_attempts=_read_int(parser, 'max_attempts', DEFAULT_MAX_ATTEMPTS, 1),
        retrieve_timeout=_read_int(parser, 'retrieve_timeout', DEFAULT_RETRIEVE_TIMEOUT, 0),
        request_timeout=_read_int(parser, 'request_timeout', DEFAULT_REQUEST_TIMEOUT, 1),
        exclude_types=_split_list(parser.get('ToolOptions', 'exclude_types', fallback='')),
        supplemental_types=_split_list(
            parser.get('ToolOptions', 'supplemental_types', fallback='')
        ),
        enumerate_members=enumerate_members,
    )


def build_refresh_plan(project_path: Path) -> RefreshPlan:
    """Construct a plan containing all refresh-related paths for a project."""

    return RefreshPlan(
        project_path=project_path,
        manifest_path=project_path / 'manifest' / 'package.xml',
        force_app_main_path=project_path / 'force-app' / 'main',
        result_path=project_path / 'retrieve_result.json',
    )


def ensure_sfdx_project(project_name: str, project_path: Path) -> bool:
    """Generate the SFDX project unless its sfdx-project.json already exists."""

    if (project_path / PROJECT_MARKER_FILENAME).is_file():
        click.echo(click.style(f"✓ Using existing project '{project_name}'.", fg='green'))
        return True

    click.echo(f"Generating new SFDX project '{project_name}'...")
    result = run_command(
        ['sf', 'project', 'generate', '--name', project_path.name],
        cwd=project_path.parent,
        check=False,
    )
    return result.success


def check_auth(alias: str) -> bool:
    """Return True when the provided alias has an active Salesforce session."""

    click.echo(f"Checking for existing authentication for alias: '{alias}'...")
    result = run_command(
        ['sf', 'org', 'display', '--target-org', alias, '--json'],
        capture_output=True,
        check=False,
    )
    if result.success:
        click.echo(click.style("✓ Found active session.", fg='green'))
        return True

    click.echo(click.style("No active session found. A new login will be required.", fg='yellow'))
    return False


def ensure_authenticated(alias: str, login_url: str) -> bool:
    """Authenticate to the org when no valid session exists."""

    if check_auth(alias):
        return True

    click.echo(
        click.style(
            "\nAction Required: A browser window will open for authentication.",
            bold=True,
        )
    )
    login_result = run_command(
        ['sf', 'org', 'login', 'web', '--alias', alias, '--instance-url', login_url],
        check=False,
    )
    return login_result.success


def run_project_retrieve(
    plan: RefreshPlan, target_org: str, timeout: float | None = None
) -> CommandResult:
    """Retrieve the manifest contents into the project's package directory."""

    return run_command(
        [
            'sf',
            'project',
            'retrieve',
            'start',
            '--manifest',
            str(plan.manifest_path.relative_to(plan.project_path)),
            '--target-org',
            target_org,
            '--json',
        ],
        cwd=plan.project_path,
        capture_output=True,
        check=False,
        timeout=timeout,
    )


def read_json_output(result: CommandResult) -> dict | None:
    """Return the JSON payload printed by an sf command, or None."""

    if not result.stdout:
        return None
    try:
        payload = json.loads(result.stdout)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def commit_project(project_path: Path, alias: str, env: str) -> bool:
    """Commit the refreshed project to git, initialising the repository if needed."""

    click.echo(click.style("\nRunning git commit...", fg='cyan'))
    if not (project_path / '.git').exists():
        click.echo("Initializing git repository...")
        if not run_command(['git', 'init'], cwd=project_path, check=False).success:
            click.echo(click.style("Git commit error: 'git init' failed.", fg='red'))
            return False

    if not run_command(['git', 'add', '.'], cwd=project_path, check=False).success:
        click.echo(click.style("Git commit error: 'git add' failed.", fg='red'))
        return False

    timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()
    message = f"Update metadata from {alias} ({env}) on {timestamp}"
    if not run_command(['git', 'commit', '-m', message], cwd=project_path, check=False).success:
        click.echo(click.style("Git commit error: 'git commit' failed.", fg='red'))
        return False

    click.echo(click.style("✓ Git commit complete.", fg='green'))
    return True
