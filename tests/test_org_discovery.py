import json

import pytest
import requests

import org_discovery
from org_discovery import (
    DiscoveryContext,
    DiscoveryError,
    MemberFetcher,
    OrgConnection,
    OrgCredentials,
    build_candidate_types,
    collect_member_overrides,
    fetch_folder_members,
    fetch_standard_objects,
    get_org_credentials,
    list_metadata,
    list_metadata_types,
)
from tool_utils import CommandResult


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, routes):
        self.routes = routes
        self.headers = {}
        self.calls = []

    def get(self, url, timeout=None):
        self.calls.append((url, timeout))
        return self.routes[url]


def _connection(routes):
    credentials = OrgCredentials('https://example.my.salesforce.com', 'TOKEN')
    return OrgConnection(credentials, request_timeout=5, session=FakeSession(routes))


def _json_result(payload, success=True):
    return CommandResult(success, 0 if success else 1, json.dumps(payload), 0.1)


def test_connection_reports_latest_api_version_and_sends_token():
    connection = _connection(
        {
            'https://example.my.salesforce.com/services/data': FakeResponse(
                [{'version': '60.0'}, {'version': '61.0'}, {'version': '62.0'}]
            )
        }
    )

    assert connection.api_versions() == ['60.0', '61.0', '62.0']
    assert connection.latest_api_version() == '62.0'
    assert connection.session.headers['Authorization'] == 'Bearer TOKEN'
    assert connection.session.calls[0][1] == 5


def test_connection_http_error_becomes_discovery_error():
    connection = _connection(
        {'https://example.my.salesforce.com/services/data': FakeResponse({}, status_code=401)}
    )

    with pytest.raises(DiscoveryError):
        connection.latest_api_version()


def test_standard_objects_exclude_custom_and_non_layoutable():
    connection = _connection(
        {
            'https://example.my.salesforce.com/services/data/v62.0/sobjects': FakeResponse(
                {
                    'sobjects': [
                        {'name': 'Account', 'custom': False, 'layoutable': True},
                        {'name': 'AccountHistory', 'custom': False, 'layoutable': False},
                        {'name': 'Invoice__c', 'custom': True, 'layoutable': True},
                        {'name': 'Contact', 'custom': False, 'layoutable': True},
                    ]
                }
            )
        }
    )

    members = fetch_standard_objects(DiscoveryContext(connection, 'myOrg', '62.0'))

    assert members == ['Account', 'Contact']


def test_get_org_credentials_reads_sf_org_display(monkeypatch):
    payload = {
        'status': 0,
        'result': {
            'instanceUrl': 'https://example.my.salesforce.com/',
            'accessToken': 'TOKEN',
            'username': 'admin@example.com',
        },
    }
    monkeypatch.setattr(org_discovery, 'run_command', lambda *a, **k: _json_result(payload))

    credentials = get_org_credentials('myOrg')

    assert credentials.instance_url == 'https://example.my.salesforce.com'
    assert credentials.access_token == 'TOKEN'
    assert credentials.alias == 'myOrg'


def test_get_org_credentials_fails_without_session(monkeypatch):
    monkeypatch.setattr(
        org_discovery,
        'run_command',
        lambda *a, **k: _json_result({'status': 1, 'message': 'No org'}, success=False),
    )

    with pytest.raises(DiscoveryError):
        get_org_credentials('myOrg')


def test_list_metadata_types_returns_xml_names(monkeypatch):
    calls = []

    def fake_run(command, **kwargs):
        calls.append(command)
        return _json_result(
            {'status': 0, 'result': {'metadataObjects': [{'xmlName': 'ApexClass'}, {'xmlName': 'Flow'}]}}
        )

    monkeypatch.setattr(org_discovery, 'run_command', fake_run)

    assert list_metadata_types('myOrg', '62.0') == ['ApexClass', 'Flow']
    assert calls[0][:4] == ['sf', 'org', 'list', 'metadata-types']
    assert '62.0' in calls[0]


def test_list_metadata_types_failure_raises(monkeypatch):
    monkeypatch.setattr(
        org_discovery, 'run_command', lambda *a, **k: CommandResult(False, 1, 'boom', 0.1)
    )

    with pytest.raises(DiscoveryError):
        list_metadata_types('myOrg', '62.0')


def test_list_metadata_accepts_single_object_result(monkeypatch):
    monkeypatch.setattr(
        org_discovery,
        'run_command',
        lambda *a, **k: _json_result({'status': 0, 'result': {'fullName': 'Sales'}}),
    )

    assert list_metadata('myOrg', 'ReportFolder', '62.0') == ['Sales']


def test_fetch_folder_members_lists_folders_then_items(monkeypatch):
    listings = {
        ('ReportFolder', None): ['Sales', 'Service'],
        ('Report', 'Sales'): ['Sales/Pipeline'],
        ('Report', 'Service'): ['Service/Cases', 'Service/Backlog'],
        ('Report', 'unfiled$public'): ['unfiled$public/Quarterly'],
    }
    monkeypatch.setattr(
        org_discovery,
        'list_metadata',
        lambda alias, metadata_type, api_version, folder=None: listings[(metadata_type, folder)],
    )

    members = fetch_folder_members(DiscoveryContext(None, 'myOrg', '62.0'), 'Report')

    assert members == [
        'Sales',
        'Sales/Pipeline',
        'Service',
        'Service/Cases',
        'Service/Backlog',
        'unfiled$public/Quarterly',
    ]


def test_build_candidate_types_appends_missing_supplemental_types():
    candidates = build_candidate_types(
        ['ApexClass', 'FlexiPage', 'ApexClass'], ['FlexiPage', 'LightningComponentBundle']
    )

    assert candidates == ['ApexClass', 'FlexiPage', 'LightningComponentBundle']


def _failing_fetch(context):
    raise DiscoveryError('Listing failed.')


def test_collect_member_overrides_only_runs_fetchers_for_candidates():
    context = DiscoveryContext(None, 'myOrg', '62.0')
    fetchers = [
        MemberFetcher('Report', lambda ctx: ['Sales', 'Sales/Pipeline']),
        MemberFetcher('Dashboard', lambda ctx: pytest.fail('should not run')),
    ]

    overrides = collect_member_overrides(context, ['Report', 'Flow'], fetchers)

    assert overrides == {'Report': ['Sales', 'Sales/Pipeline']}


def test_optional_fetcher_failure_falls_back_to_wildcard():
    context = DiscoveryContext(None, 'myOrg', '62.0')

    overrides = collect_member_overrides(
        context, ['Report'], [MemberFetcher('Report', _failing_fetch)]
    )

    assert overrides == {}


def test_required_fetcher_failure_is_raised():
    context = DiscoveryContext(None, 'myOrg', '62.0')

    with pytest.raises(DiscoveryError):
        collect_member_overrides(
            context, ['CustomObject'], [MemberFetcher('CustomObject', _failing_fetch, required=True)]
        )


def test_default_fetchers_cover_folder_types(monkeypatch):
    seen = []
    monkeypatch.setattr(
        org_discovery,
        'fetch_folder_members',
        lambda context, metadata_type: seen.append(metadata_type) or [metadata_type + 'Folder'],
    )
    context = DiscoveryContext(None, 'myOrg', '62.0')

    overrides = collect_member_overrides(context, ['Dashboard', 'EmailTemplate'])

    assert seen == ['Dashboard', 'EmailTemplate']
    assert overrides == {
        'Dashboard': ['DashboardFolder'],
        'EmailTemplate': ['EmailTemplateFolder'],
    }


def test_email_templates_include_unfiled_public_items(monkeypatch):
    listings = {
        ('EmailFolder', None): ['Marketing'],
        ('EmailTemplate', 'Marketing'): ['Marketing/Welcome'],
        ('EmailTemplate', 'unfiled$public'): ['unfiled$public/Reset_Password'],
    }
    monkeypatch.setattr(
        org_discovery,
        'list_metadata',
        lambda alias, metadata_type, api_version, folder=None: listings[(metadata_type, folder)],
    )

    members = fetch_folder_members(DiscoveryContext(None, 'myOrg', '62.0'), 'EmailTemplate')

    assert members == ['Marketing', 'Marketing/Welcome', 'unfiled$public/Reset_Password']


def test_dashboards_have_no_unfiled_folder(monkeypatch):
    calls = []

    def fake_list(alias, metadata_type, api_version, folder=None):
        calls.append((metadata_type, folder))
        return ['Ops'] if folder is None else ['Ops/Overview']

    monkeypatch.setattr(org_discovery, 'list_metadata', fake_list)

    members = fetch_folder_members(DiscoveryContext(None, 'myOrg', '62.0'), 'Dashboard')

    assert members == ['Ops', 'Ops/Overview']
    assert calls == [('DashboardFolder', None), ('Dashboard', 'Ops')]


def test_list_metadata_passes_folder_as_a_single_argument(monkeypatch):
    calls = []

    def fake_run(command, **kwargs):
        calls.append(command)
        return _json_result({'status': 0, 'result': []})

    monkeypatch.setattr(org_discovery, 'run_command', fake_run)

    assert list_metadata('myOrg', 'Report', '62.0', folder='unfiled$public') == []
    assert calls[0][-2:] == ['--folder', 'unfiled$public']


def test_list_metadata_unexpected_result_raises(monkeypatch):
    monkeypatch.setattr(
        org_discovery,
        'run_command',
        lambda *a, **k: _json_result({'status': 0, 'result': 'not a list'}),
    )

    with pytest.raises(DiscoveryError):
        list_metadata('myOrg', 'Report', '62.0')


@pytest.mark.parametrize(
    'payload',
    [{'errorCode': 'INVALID_SESSION_ID'}, [{'label': 'Spring'}], ['62.0']],
)
def test_unexpected_version_payload_becomes_discovery_error(payload):
    connection = _connection(
        {'https://example.my.salesforce.com/services/data': FakeResponse(payload)}
    )

    with pytest.raises(DiscoveryError):
        connection.latest_api_version()


@pytest.mark.parametrize(
    'payload',
    [[{'errorCode': 'NOT_FOUND'}], {'sobjects': None}, {'sobjects': [{'custom': False}]}],
)
def test_unexpected_sobjects_payload_becomes_discovery_error(payload):
    connection = _connection(
        {
            'https://example.my.salesforce.com/services/data/v62.0/sobjects': FakeResponse(
                payload
            )
        }
    )

    with pytest.raises(DiscoveryError):
        connection.list_sobjects('62.0')
