"""Discovery of API versions, metadata types and enumerated members for an org."""

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import click
import requests

from tool_utils import DEFAULT_REQUEST_TIMEOUT, read_json_output, run_command

# Types the CLI registry retrieves but the org's describe catalog can omit.
SUPPLEMENTAL_TYPES = (
    'LightningComponentBundle',
    'AuraDefinitionBundle',
    'LightningMessageChannel',
    'LightningExperienceTheme',
    'FlexiPage',
    'CustomNotificationType',
)

FOLDER_TYPES = {
    'Report': 'ReportFolder',
    'Dashboard': 'DashboardFolder',
    'EmailTemplate': 'EmailFolder',
    'Document': 'DocumentFolder',
}

# Built-in folder that the folder listings never return.
UNFILED_PUBLIC_FOLDER = 'unfiled$public'
UNFILED_FOLDER_TYPES = frozenset({'Report', 'EmailTemplate'})


class DiscoveryError(click.ClickException):
    """Raised when org metadata could not be discovered."""


@dataclass
class OrgCredentials:
    """Session details reported by ``sf org display``."""

    instance_url: str
    access_token: str
    username: str = ''
    alias: str = ''


def get_org_credentials(alias: str) -> OrgCredentials:
    """Read the instance URL and access token for an authenticated alias."""

    result = run_command(
        ['sf', 'org', 'display', '--target-org', alias, '--json'],
        capture_output=True,
        check=False,
    )
    payload = read_json_output(result)
    org_info = (payload or {}).get('result') or {}
    if not result.success or not org_info.get('instanceUrl') or not org_info.get('accessToken'):
        raise DiscoveryError(f"Unable to read session details for org alias '{alias}'.")

    return OrgCredentials(
        instance_url=org_info['instanceUrl'].rstrip('/'),
        access_token=org_info['accessToken'],
        username=org_info.get('username', ''),
        alias=org_info.get('alias') or alias,
    )


@dataclass
class OrgConnection:
    """Minimal REST client for the org's data API."""

    credentials: OrgCredentials
    request_timeout: int = DEFAULT_REQUEST_TIMEOUT
    session: requests.Session = field(default_factory=requests.Session)

    def __post_init__(self) -> None:
        self.session.headers.update(
            {
                'Accept': 'application/json',
                'Authorization': f"Bearer {self.credentials.access_token}",
            }
        )

    def _get(self, path: str) -> Any:
        url = f"{self.credentials.instance_url}{path}"
        try:
            response = self.session.get(url, timeout=self.request_timeout)
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as exc:
            raise DiscoveryError(f"Request to {path} failed: {exc}") from exc

    def api_versions(self) -> list[str]:
        """Return supported API versions, oldest first."""
        entries = self._get('/services/data')
        if not isinstance(entries, list) or not all(
            isinstance(entry, dict) and entry.get('version') for entry in entries
        ):
            raise DiscoveryError("Unexpected response while listing API versions.")
        return [entry['version'] for entry in entries]

    def latest_api_version(self) -> str:
        versions = self.api_versions()
        if not versions:
            raise DiscoveryError("The org did not report any API versions.")
        return versions[-1]

    def list_sobjects(self, api_version: str) -> list[dict]:
        """Return the describe-global entries for every object in the org."""
        payload = self._get(f"/services/data/v{api_version}/sobjects")
        sobjects = payload.get('sobjects') if isinstance(payload, dict) else None
        if not isinstance(sobjects, list) or not all(
            isinstance(sobject, dict) and sobject.get('name') for sobject in sobjects
        ):
            raise DiscoveryError("Unexpected response while listing objects.")
        return sobjects


def list_metadata_types(alias: str, api_version: str, cwd: Path = None) -> list[str]:
    """Return the retrievable metadata type names the org reports."""

    result = run_command(
        [
            'sf', 'org', 'list', 'metadata-types',
            '--target-org', alias,
            '--api-version', api_version,
            '--json',
        ],
        cwd=cwd,
        capture_output=True,
        check=False,
    )
    payload = read_json_output(result)
    if not result.success or payload is None:
        raise DiscoveryError("Failed to fetch metadata types.")

    result_info = payload.get('result')
    metadata_objects = result_info.get('metadataObjects') if isinstance(result_info, dict) else None
    if not isinstance(metadata_objects, list):
        raise DiscoveryError("Unexpected response while fetching metadata types.")
    return [
        entry['xmlName']
        for entry in metadata_objects
        if isinstance(entry, dict) and entry.get('xmlName')
    ]


def list_metadata(
    alias: str, metadata_type: str, api_version: str, folder: str | None = None
) -> list[str]:
    """Return the full names of every component of a type, optionally within a folder."""

    command = [
        'sf', 'org', 'list', 'metadata',
        '--metadata-type', metadata_type,
        '--target-org', alias,
        '--api-version', api_version,
        '--json',
    ]
    if folder:
        command.extend(['--folder', folder])

    result = run_command(command, capture_output=True, check=False)
    payload = read_json_output(result)
    if not result.success or payload is None:
        scope = f" in folder '{folder}'" if folder else ''
        raise DiscoveryError(f"Failed to list {metadata_type} metadata{scope}.")

    items = payload.get('result') or []
    # A single component comes back as an object rather than a list.
    if isinstance(items, dict):
        items = [items]
    if not isinstance(items, list):
        raise DiscoveryError(f"Unexpected response while listing {metadata_type} metadata.")
    return [item['fullName'] for item in items if isinstance(item, dict) and item.get('fullName')]


def build_candidate_types(discovered: Iterable[str], supplemental: Iterable[str]) -> list[str]:
    """Merge discovered and supplemental types, keeping first-seen order."""
    return list(dict.fromkeys([*discovered, *supplemental]))


@dataclass
class DiscoveryContext:
    """What member fetchers need to query the org."""

    connection: OrgConnection
    alias: str
    api_version: str


def fetch_standard_objects(context: DiscoveryContext) -> list[str]:
    sobjects = context.connection.list_sobjects(context.api_version)
    return [
        sobject['name']
        for sobject in sobjects
        if not sobject.get('custom') and sobject.get('layoutable')
    ]


def fetch_folder_members(context: DiscoveryContext, metadata_type: str) -> list[str]:
    """List each folder of a folder-scoped type followed by the items it holds.

    Items in unfiled$public are listed without the folder itself, which is
    not a retrievable component.
    """
    members: list[str] = []
    folders = list_metadata(context.alias, FOLDER_TYPES[metadata_type], context.api_version)
    for folder in folders:
        members.append(folder)
        members.extend(
            list_metadata(context.alias, metadata_type, context.api_version, folder=folder)
        )
    if metadata_type in UNFILED_FOLDER_TYPES:
        members.extend(
            list_metadata(
                context.alias, metadata_type, context.api_version, folder=UNFILED_PUBLIC_FOLDER
            )
        )
    return members


def fetch_notification_types(context: DiscoveryContext) -> list[str]:
    return list_metadata(context.alias, 'CustomNotificationType', context.api_version)


@dataclass
class MemberFetcher:
    """Enumerates the members of one type instead of relying on a wildcard.

    A required fetcher that fails stops the refresh; an optional one falls
    back to the wildcard.
    """

    type_name: str
    fetch: Callable[[DiscoveryContext], list[str]]
    required: bool = False


def default_member_fetchers() -> list[MemberFetcher]:
    fetchers = [MemberFetcher('CustomObject', fetch_standard_objects, required=True)]
    for metadata_type in FOLDER_TYPES:
        fetchers.append(
            MemberFetcher(
                metadata_type,
                lambda context, metadata_type=metadata_type: fetch_folder_members(
                    context, metadata_type
                ),
            )
        )
    fetchers.append(MemberFetcher('CustomNotificationType', fetch_notification_types))
    return fetchers


def collect_member_overrides(
    context: DiscoveryContext,
    candidates: Sequence[str],
    fetchers: Iterable[MemberFetcher] | None = None,
) -> dict[str, list[str]]:
    """Run each fetcher whose type is a candidate and collect the member lists."""

    if fetchers is None:
        fetchers = default_member_fetchers()
    candidate_set = set(candidates)
    overrides: dict[str, list[str]] = {}

    for fetcher in fetchers:
        if fetcher.type_name not in candidate_set:
            continue
        click.echo(f"Enumerating {fetcher.type_name} members...")
        try:
            members = fetcher.fetch(context)
        except DiscoveryError as exc:
            if fetcher.required:
                raise
            click.echo(
                click.style(
                    f"Warning: {exc.message} Falling back to '*' for {fetcher.type_name}.",
                    fg='yellow',
                )
            )
            continue
        overrides[fetcher.type_name] = members
        click.echo(
            click.style(f"✓ {fetcher.type_name}: {len(members)} members.", fg='green')
        )

    return overrides
