"""
COUNTER Bulk Harvester Test Suite

Tests cover:
- SUSHI credentials from the environment
- Report URL building and fetching (requests stubbed out)
- ETA estimates
- The per-account harvest loop: progress events, failures, output choice
- Account file loading with pandas
- Command-line parsing and a full main() run
"""

import json
from datetime import datetime, timezone

import pytest

import counter_harvest as ch
from sushi_auth import SushiCredentials


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

REQUEST = {
    'report_type': 'tr_j1',
    'format': '5.1',
    'begin_date': '2024-01-01',
    'end_date': '2024-02-29',
    'formatted': False
}


def report_for(institution, count):
    return {
        'Report_Header': {
            'Institution_Name': institution,
            'Institution_ID': {'Proprietary': [f'pnas:{institution[:1].lower()}']}
        },
        'Report_Items': [{
            'Title': 'Journal of Tests',
            'Platform': 'PNAS',
            'Item_ID': {'DOI': '10.1000/jot'},
            'Attribute_Performance': [{
                'Access_Type': 'Controlled',
                'Performance': {'Total_Item_Requests': {'2024-01': count}}
            }]
        }]
    }


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.ok = 200 <= status_code < 400
        self._payload = payload

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params, timeout))
        return self.response


@pytest.fixture
def sushi_env(monkeypatch):
    monkeypatch.setenv('SUSHI_REQUESTOR_ID', 'req-default')
    monkeypatch.delenv('SUSHI_API_KEY', raising=False)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

class TestSushiCredentials:
    def test_missing_requestor_raises(self, monkeypatch):
        monkeypatch.delenv('SUSHI_REQUESTOR_ID', raising=False)
        with pytest.raises(ValueError):
            SushiCredentials()

    def test_query_params(self, sushi_env, monkeypatch):
        monkeypatch.setenv('SUSHI_API_KEY', 'secret')
        credentials = SushiCredentials()

        assert credentials.get_query_params('123') == {
            'requestor_id': 'req-default',
            'customer_id': '123',
            'api_key': 'secret'
        }
        assert credentials.get_query_params('123', 'req-own')['requestor_id'] == 'req-own'

    def test_apply_to_account_keeps_own_requestor(self, sushi_env):
        credentials = SushiCredentials()
        original = {'customer_id': '1', 'requestor_id': ''}

        assert credentials.apply_to_account(original)['requestor_id'] == 'req-default'
        assert credentials.apply_to_account({'customer_id': '2', 'requestor_id': 'mine'})['requestor_id'] == 'mine'
        assert original['requestor_id'] == ''


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------

class TestFetchReport:
    def test_build_api_url_per_release(self):
        base_urls = {'5': 'https://sushi.example.org/reports', '5.1': 'https://sushi.example.org/r51/reports/'}

        assert ch.build_api_url({'format': '5', 'report_type': 'TR_J3'}, base_urls) == \
            'https://sushi.example.org/reports/tr_j3'
        assert ch.build_api_url({'format': None, 'report_type': 'tr_j1'}, base_urls) == \
            'https://sushi.example.org/reports/tr_j1'
        assert ch.build_api_url({'format': '5.1', 'report_type': 'tr_j4'}, base_urls) == \
            'https://sushi.example.org/r51/reports/tr_j4'

    def test_sends_account_and_period(self):
        session = FakeSession(FakeResponse(200, {'Report_Items': []}))
        account = {'customer_id': '123', 'requestor_id': 'req-1'}

        payload = ch.fetch_report(REQUEST, account, session=session)

        assert payload == {'Report_Items': []}
        url, params, timeout = session.calls[0]
        assert url.endswith('/tr_j1')
        assert params == {
            'requestor_id': 'req-1',
            'customer_id': '123',
            'begin_date': '2024-01-01',
            'end_date': '2024-02-29'
        }
        assert timeout == ch.REQUEST_TIMEOUT

    def test_uses_credentials(self, sushi_env):
        session = FakeSession(FakeResponse(200, {}))

        ch.fetch_report(REQUEST, {'customer_id': '9'}, credentials=SushiCredentials(), session=session)

        assert session.calls[0][1]['requestor_id'] == 'req-default'

    def test_non_success_status_raises(self):
        session = FakeSession(FakeResponse(500))

        with pytest.raises(ch.ReportFetchError, match='API returned 500'):
            ch.fetch_report(REQUEST, {'customer_id': '1'}, session=session)

    def test_defaults_to_requests_module(self, monkeypatch):
        calls = []

        def fake_get(url, params=None, timeout=None):
            calls.append(url)
            return FakeResponse(200, {'ok': True})

        monkeypatch.setattr(ch.requests, 'get', fake_get)

        assert ch.fetch_report(REQUEST, {'customer_id': '1'}) == {'ok': True}
        assert len(calls) == 1


class TestCalculateEta:
    def test_seconds(self):
        assert ch.calculate_eta(0, 1, 3, now=10) == '20 seconds'

    def test_minutes(self):
        assert ch.calculate_eta(0, 1, 10, now=60) == '9 minutes'

    def test_done(self):
        assert ch.calculate_eta(0, 5, 5, now=100) == '0 seconds'


# ---------------------------------------------------------------------------
# Harvest loop
# ---------------------------------------------------------------------------

class TestHarvestAccounts:
    def make_fetch(self):
        reports = {
            'b': report_for('Beta Univ', 3),
            'a': report_for('Alpha Univ', 4),
            'e': {'Report_Header': {'Institution_Name': 'Empty College'}, 'Report_Items': []}
        }

        def fetch(request, account):
            if account['customer_id'] not in reports:
                raise ch.ReportFetchError('API returned 500')
            return reports[account['customer_id']]

        return fetch

    def test_counts_and_summary(self):
        accounts = [{'customer_id': c} for c in ['b', 'x', 'a', 'e']]

        result = ch.harvest_accounts(REQUEST, accounts, fetch=self.make_fetch(), delay=0)

        assert result['type'] == 'complete'
        assert result['total'] == 4
        assert result['successful'] == 3
        assert result['failed'] == 1
        assert result['summary'] == {
            'totalUsage': 7,
            'uniquePlatforms': 1,
            'metricTypes': ['Total_Item_Requests']
        }
        today = datetime.now(timezone.utc).strftime('%Y%m%d')
        assert result['filename'] == f'bulk_counter_5.1-tr_j1_{today}'

        lines = result['csv'].split('\n')
        assert len(lines) == 5
        assert lines[1].startswith('"Beta Univ"')
        assert lines[2].startswith('"ERROR","x","Failed: API returned 500"')
        assert '"No Data"' in lines[4]

    def test_progress_events(self):
        events = []
        accounts = [{'customer_id': c} for c in ['a', 'x']]

        ch.harvest_accounts(REQUEST, accounts, fetch=self.make_fetch(), progress_callback=events.append, delay=0)

        assert [e['current'] for e in events] == [1, 2]
        assert [e['percentage'] for e in events] == [50, 100]
        assert events[0]['currentAccount'] == 'a'
        assert events[1]['successful'] == 1
        assert events[1]['failed'] == 0
        assert all(e['type'] == 'progress' and e['total'] == 2 for e in events)

    def test_formatted_output(self):
        request = dict(REQUEST, formatted=True)
        accounts = [{'customer_id': c} for c in ['b', 'a', 'x']]

        result = ch.harvest_accounts(request, accounts, fetch=self.make_fetch(), delay=0)

        assert result['filename'].endswith('_formatted')
        assert result['csv'].split('\n') == [
            '"","Reporting_Period_Total","Jan-24","Feb-24"',
            '"Alpha Univ",4,4,0',
            '"  Total_Item_Requests",4,4,0',
            '"Beta Univ",3,3,0',
            '"  Total_Item_Requests",3,3,0',
            '"Grand Total",7,7,0',
            '',
            '"--- Errors ---"',
            '"x","Failed: API returned 500"',
        ]

    def test_sleeps_between_accounts_only(self, monkeypatch):
        sleeps = []
        monkeypatch.setattr(ch.time, 'sleep', sleeps.append)
        accounts = [{'customer_id': c} for c in ['a', 'b', 'e']]

        ch.harvest_accounts(REQUEST, accounts, fetch=self.make_fetch(), delay=0.5)

        assert sleeps == [0.5, 0.5]


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

class TestLoadAccounts:
    def test_with_header(self, tmp_path):
        path = tmp_path / 'accounts.csv'
        path.write_text('Customer_ID, Requestor_ID\n123,req-1\n456,\n,req-3\n', encoding='utf-8')

        assert ch.load_accounts(path) == [
            {'customer_id': '123', 'requestor_id': 'req-1'},
            {'customer_id': '456', 'requestor_id': ''}
        ]

    def test_bare_list(self, tmp_path):
        path = tmp_path / 'ids.csv'
        path.write_text('00111\n00222\n', encoding='utf-8')

        assert ch.load_accounts(path) == [{'customer_id': '00111'}, {'customer_id': '00222'}]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ch.load_accounts(tmp_path / 'nope.csv')

    def test_parse_customer_list(self):
        assert ch.parse_customer_list(' 1, 2,,3 ') == [
            {'customer_id': '1'}, {'customer_id': '2'}, {'customer_id': '3'}
        ]


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

class TestCommandLine:
    def test_parse_arguments(self):
        args = ch.parse_arguments([
            '-t', 'TR_J4', '-f', '5.1',
            '--begin-date', '2024-01-01', '--end-date', '2024-06-30',
            '-c', '1,2', '--formatted'
        ])

        assert args.report_type == 'tr_j4'
        assert args.format == '5.1'
        assert args.formatted
        assert args.output_dir == ch.OUTPUT_DIR

    @pytest.mark.parametrize('begin,end', [
        ('2024/01/01', '2024-06-30'),
        ('2024-01-01', '30-06-2024'),
        ('2024-02-30', '2024-06-30'),
    ])
    def test_malformed_dates_rejected(self, begin, end):
        with pytest.raises(SystemExit) as excinfo:
            ch.parse_arguments(['--begin-date', begin, '--end-date', end, '-c', '1'])
        assert excinfo.value.code == 2

    def test_inverted_period_rejected(self):
        with pytest.raises(SystemExit):
            ch.parse_arguments(['--begin-date', '2024-06-01', '--end-date', '2024-01-31', '-c', '1'])

    def test_dates_are_zero_padded(self):
        args = ch.parse_arguments(['--begin-date', '2024-1-5', '--end-date', ' 2024-12-31', '-c', '1'])
        assert args.begin_date == '2024-01-05'
        assert args.end_date == '2024-12-31'

    def test_malformed_date_stops_before_any_fetch(self, tmp_path, monkeypatch, sushi_env):
        fetched = []
        monkeypatch.setattr(ch, 'fetch_report', lambda *a, **k: fetched.append(a))
        monkeypatch.setattr(ch, 'setup_logging', lambda: tmp_path / 'test.log')

        with pytest.raises(SystemExit):
            ch.main(['--begin-date', '2024/01/01', '--end-date', '2024-01-31', '-c', '1'])

        assert fetched == []

    def test_accounts_required(self):
        with pytest.raises(SystemExit):
            ch.parse_arguments(['--begin-date', '2024-01-01', '--end-date', '2024-06-30'])

    def test_main_writes_csv_and_summary(self, tmp_path, monkeypatch, sushi_env):
        requested = []

        def fake_fetch(request, account, credentials=None, session=None):
            requested.append((account['customer_id'], account['requestor_id']))
            return report_for('Alpha Univ', 2)

        monkeypatch.setattr(ch, 'fetch_report', fake_fetch)
        monkeypatch.setattr(ch, 'setup_logging', lambda: tmp_path / 'test.log')

        ch.main([
            '-t', 'tr_j1', '-f', '5.1',
            '--begin-date', '2024-01-01', '--end-date', '2024-01-31',
            '-c', '77', '-o', str(tmp_path / 'out'), '--delay', '0'
        ])

        assert requested == [('77', 'req-default')]
        csv_files = list((tmp_path / 'out').glob('*.csv'))
        assert len(csv_files) == 1
        assert csv_files[0].read_text(encoding='utf-8').split('\n')[0].startswith('"Institution_Name"')

        summary = json.loads(next((tmp_path / 'out').glob('*_summary.json')).read_text(encoding='utf-8'))
        assert summary['successful'] == 1
        assert summary['summary']['totalUsage'] == 2
        assert 'csv' not in summary

    def test_main_without_credentials_exits(self, tmp_path, monkeypatch):
        monkeypatch.delenv('SUSHI_REQUESTOR_ID', raising=False)
        monkeypatch.setattr(ch, 'setup_logging', lambda: tmp_path / 'test.log')

        with pytest.raises(SystemExit) as excinfo:
            ch.main(['--begin-date', '2024-01-01', '--end-date', '2024-01-31', '-c', '1'])

        assert excinfo.value.code == 1
