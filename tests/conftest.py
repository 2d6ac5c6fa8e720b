import logging
import os
import sys

import pytest
import requests

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import tracker_menu as tm  # noqa: E402


BASE_URL = "http://tracker.test"


class FakeResponse:
    def __init__(self, status_code=200, payload=None, invalid_json=False):
        self.status_code = status_code
        self._payload = payload
        self._invalid_json = invalid_json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"HTTP {self.status_code}", response=self)

    def json(self):
        if self._invalid_json:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self._payload


class FakeSession:
    """Records every request; answers from a (method, path) -> response map."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        path = url[len(BASE_URL):] if url.startswith(BASE_URL) else url
        self.calls.append((method, path, kwargs, timeout))
        resp = self.routes.get((method, path))
        if isinstance(resp, Exception):
            raise resp
        return resp if resp is not None else FakeResponse(204)


class FakeClient:
    """Stands in for TrackerClient; records mutating calls in order."""

    def __init__(self, trackers=None, total="0s"):
        self.trackers = list(trackers or [])
        self.total = total
        self.calls = []

    def list_trackers(self):
        return list(self.trackers)

    def total_duration(self):
        return self.total

    def create(self, key):
        self.calls.append(("create", key))

    def start(self, key):
        self.calls.append(("start", key))

    def pause(self):
        self.calls.append(("pause",))

    def delete(self, key):
        self.calls.append(("delete", key))

    def set_description(self, key, description):
        self.calls.append(("set_description", key, description))

    def adjust(self, key, direction, amount):
        self.calls.append(("adjust", key, direction, amount))

    def submit(self):
        self.calls.append(("submit",))


class FakeSelector(tm.Selector):
    def __init__(self, outcome=None, pick=None, prompt=None):
        self.outcome = outcome or tm.SelectionOutcome(tm.SelectionSignal.CANCEL)
        self.pick_result = pick
        self.prompt_result = prompt
        self.select_calls = []
        self.pick_calls = []
        self.prompt_calls = []

    def select(self, rows, title, selected=None):
        self.select_calls.append((list(rows), title, selected))
        return self.outcome

    def pick(self, lines, title):
        self.pick_calls.append((list(lines), title))
        return self.pick_result

    def prompt(self, title, initial=""):
        self.prompt_calls.append((title, initial))
        return self.prompt_result


@pytest.fixture
def cfg(tmp_path):
    """Config with every path redirected into tmp_path."""
    return tm.Config(
        tracker_url=BASE_URL,
        issue_cache=str(tmp_path / "issues.json"),
        export_command="jira-export --json",
        browse_url="https://jira.example.com/browse/{key}",
        running_icon=">",
        paused_icon="|",
        log_file=str(tmp_path / "tracker_menu.log"),
    )


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def client(fake_session):
    return tm.TrackerClient(BASE_URL, timeout=3, session=fake_session)


@pytest.fixture(autouse=True)
def _reset_logger():
    yield
    log = logging.getLogger('tracker_menu')
    for h in list(log.handlers):
        log.removeHandler(h)
        h.close()


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("TRACKER_URL", "TRACKER_PORT", "TRACKER_MENU_SELECTOR"):
        monkeypatch.delenv(name, raising=False)
