#!/usr/bin/env python3
"""
Salesforce Metadata Refresh

Creates (when missing) and refreshes an SFDX project holding a full copy of an
org's metadata:

- Generates the SFDX project if sfdx-project.json is not present.
- Authenticates the org alias, opening a browser login only when needed.
- Builds manifest/package.xml from every metadata type the org reports.
- Retrieves the metadata into force-app/main, dropping types the sf CLI
  registry does not know until the retrieve succeeds.
- Optionally commits the result to git.

Usage:
python refresh_project.py <projectName> [orgAlias=myOrg] [env=prod|sandbox] [commit]
"""
from functools import partial
from pathlib import Path
import sys

import click

from org_discovery import (
    SUPPLEMENTAL_TYPES,
    DiscoveryContext,
    OrgConnection,
    build_candidate_types,
    collect_member_overrides,
    get_org_credentials,
    list_metadata_types,
)
from retrieve_loop import retrieve_with_retries
from tool_utils import (
    LOGIN_URLS,
    build_refresh_plan,
    commit_project,
    ensure_authenticated,
    ensure_sfdx_project,
    read_config,
    run_project_retrieve,
)

USAGE = "Usage: refresh_project.py <projectName> [orgAlias] [env(prod|sandbox)] [commit]"


@click.command()
@click.argument('project_name', required=False)
@click.argument('org_alias', required=False, default='myOrg')
@click.argument('env', required=False, default='prod')
@click.argument('commit', required=False)
@click.option(
    '--config',
    'config_path',
    default='config.ini',
    type=click.Path(dir_okay=False, path_type=Path),
    help='INI file with [ToolOptions] overrides.',
)
def main(project_name, org_alias, env, commit, config_path):
    """Create or refresh an SFDX project with all metadata from an org."""
    if not project_name:
        click.echo(click.style("Error: Please specify the project name.", fg='red'))
        click.echo(USAGE)
        sys.exit(1)

    env = env.lower()
    if env not in LOGIN_URLS:
        click.echo(
            click.style(
                f"Error: Unknown environment '{env}'. Use one of: {', '.join(LOGIN_URLS)}.",
                fg='red',
            )
        )
        click.echo(USAGE)
        sys.exit(1)

    do_commit = commit == 'commit'
    if commit and not do_commit:
        click.echo(click.style(f"Ignoring unknown option '{commit}'.", fg='yellow'))

    settings = read_config(config_path)
    login_url = LOGIN_URLS[env]
    click.echo(click.style("=== Salesforce Metadata Refresh ===", bold=True, fg='cyan'))
    click.echo(f"Target: {login_url}")

    project_path = Path(project_name).resolve()
    if not ensure_sfdx_project(project_name, project_path):
        click.echo(click.style("Error: Failed to generate the SFDX project.", fg='red'))
        sys.exit(1)

    if not ensure_authenticated(org_alias, login_url):
        click.echo(click.style(f"Error: Authentication failed for '{org_alias}'.", fg='red'))
        sys.exit(1)

    credentials = get_org_credentials(org_alias)
    connection = OrgConnection(credentials, request_timeout=settings.request_timeout)
    api_version = settings.api_version or connection.latest_api_version()
    click.echo(click.style(f"✓ API version: {api_version}", fg='green'))

    discovered = list_metadata_types(org_alias, api_version, cwd=project_path)
    click.echo(click.style(f"✓ Retrieved metadata types: {len(discovered)}", fg='green'))
    candidates = build_candidate_types(
        discovered, [*SUPPLEMENTAL_TYPES, *settings.supplemental_types]
    )

    overrides = {}
    if settings.enumerate_members:
        context = DiscoveryContext(connection, org_alias, api_version)
        overrides = collect_member_overrides(context, candidates)

    retrieve_timeout = settings.retrieve_timeout or None
    result = retrieve_with_retries(
        build_refresh_plan(project_path),
        candidates,
        overrides,
        api_version,
        partial(run_project_retrieve, target_org=org_alias, timeout=retrieve_timeout),
        seed_exclusions=settings.exclude_types,
        max_attempts=settings.max_attempts,
    )
    if not result.succeeded:
        sys.exit(1)

    if result.excluded_types:
        click.echo(
            click.style(
                "Excluded types: " + ', '.join(result.excluded_types), fg='yellow'
            )
        )

    if do_commit:
        commit_project(project_path, org_alias, env)
    else:
        click.echo(click.style("Git commit skipped (no 'commit' option given).", fg='yellow'))

    click.echo("\n" + "=" * 50)
    click.echo(click.style(f"{project_path.name} is up to date.", bold=True, fg='green'))
    click.echo("=" * 50)


if __name__ == '__main__':
    main()
