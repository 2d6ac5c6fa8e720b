#!/usr/bin/env python3
# tracker_menu: pop-up menu for the local time-tracker service
#
# Menu (rofi defaults; the terminal menu uses Ctrl-D/E/O/T)
#   Enter   start a paused tracker, or pause the running one
#   Alt+1   delete tracker
#   Alt+2   edit tracker description
#   Alt+3   open issue in the browser
#   Alt+4   adjust tracked time (+15m / -10m)
#   add new          start tracking an issue from the local issue cache
#   refresh issues   re-run the issue export and replace the cache
#   submit trackers  submit every tracker
#
# Config highlights (~/.config/tracker_menu.yaml, every key optional)
#     tracker_url: http://localhost:8080
#     issue_cache: ~/.cache/tracker_menu/issues.json
#     export_command: jira-export --json
#     browse_url: https://jira.example.com/browse/{key}
#     selector: rofi              # or: terminal
#     rofi_keys: {delete: "Alt+1", edit_description: "Alt+2"}
#
# Environment
# - TRACKER_URL, or TRACKER_PORT for a service on localhost
# - TRACKER_MENU_SELECTOR (rofi / terminal)

from __future__ import annotations

import argparse
import enum
import json
import logging
import os
import re
import shlex
import subprocess
import sys
import tempfile
import webbrowser
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

import requests
import yaml
from prompt_toolkit import Application, PromptSession
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import HSplit, Layout, Window
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.styles import Style
from prompt_toolkit.utils import get_cwidth


logger = logging.getLogger('tracker_menu')


# -----------------------------
# Errors
# -----------------------------
class TrackerMenuError(RuntimeError):
    """Failure that ends the current invocation with a non-zero exit."""


class ServiceUnreachable(TrackerMenuError):
    pass


class CacheUnavailable(TrackerMenuError):
    pass


class ExportFailed(TrackerMenuError):
    pass


# -----------------------------
# Selection signals
# -----------------------------
class SelectionSignal(enum.Enum):
    DEFAULT_ACCEPT = "default_accept"
    CANCEL = "cancel"
    DELETE = "delete"
    EDIT_DESCRIPTION = "edit_description"
    OPEN = "open"
    ADJUST_DURATION = "adjust_duration"


# Bound in this order to kb-custom-1.. in rofi
CUSTOM_SIGNALS: Tuple[SelectionSignal, ...] = (
    SelectionSignal.DELETE,
    SelectionSignal.EDIT_DESCRIPTION,
    SelectionSignal.OPEN,
    SelectionSignal.ADJUST_DURATION,
)


# -----------------------------
# Config
# -----------------------------
DEFAULT_CONFIG_PATH = os.path.expanduser("~/.config/tracker_menu.yaml")
DEFAULT_ROFI_KEYS: Dict[str, str] = {
    "delete": "Alt+1",
    "edit_description": "Alt+2",
    "open": "Alt+3",
    "adjust_duration": "Alt+4",
}
DEFAULT_TERMINAL_KEYS: Dict[str, str] = {
    "delete": "c-d",
    "edit_description": "c-e",
    "open": "c-o",
    "adjust_duration": "c-t",
}
SELECTOR_NAMES = ("rofi", "terminal")


@dataclass
class Config:
    tracker_url: str = "http://localhost:8080"
    request_timeout: float = 10.0
    issue_cache: str = os.path.expanduser("~/.cache/tracker_menu/issues.json")
    export_command: str = "jira-export"
    browse_url: str = "https://jira.example.com/browse/{key}"
    selector: str = "rofi"
    running_icon: str = "▶"
    paused_icon: str = "⏸"
    rofi_command: str = "rofi"
    rofi_keys: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ROFI_KEYS))
    terminal_keys: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_TERMINAL_KEYS))
    log_file: str = os.path.expanduser("~/.tracker_menu.log")
    log_level: str = "ERROR"

    def custom_bindings(self, keys: Dict[str, str]) -> List[Tuple[SelectionSignal, str]]:
        """Pair each custom signal with its configured key, skipping blanks."""
        return [(sig, keys[sig.value]) for sig in CUSTOM_SIGNALS if keys.get(sig.value)]


def _merge_keys(defaults: Dict[str, str], raw: object, section: str) -> Dict[str, str]:
    merged = dict(defaults)
    if raw is None:
        return merged
    if not isinstance(raw, dict):
        raise ValueError(f"Config: '{section}' must be a mapping of action -> key.")
    known = {sig.value for sig in CUSTOM_SIGNALS}
    for name, key in raw.items():
        if name not in known:
            raise ValueError(f"Config: unknown action {name!r} in '{section}' (expected one of {sorted(known)})")
        merged[name] = str(key) if key else ""
    return merged


def _check_terminal_keys(keys: Dict[str, str]) -> None:
    for name, key in keys.items():
        if not key:
            continue
        try:
            KeyBindings().add(key)
        except ValueError as exc:
            raise ValueError(f"Config: invalid terminal key {key!r} for {name!r} ({exc})") from exc


def load_config(path: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> Config:
    """Defaults, then the YAML file, then environment overrides.

    Only the default path may be absent; an explicit path must exist.
    """
    env = os.environ if env is None else env
    explicit = bool(path)
    path = os.path.expanduser(path or DEFAULT_CONFIG_PATH)
    raw: object = {}
    if os.path.isfile(path):
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    elif explicit:
        raise FileNotFoundError(f"Config file not found: {path}")
    if not isinstance(raw, dict):
        raise ValueError(f"Config: expected a mapping at the top of {path}")

    cfg = Config()
    for name in ("tracker_url", "export_command", "browse_url", "selector",
                 "running_icon", "paused_icon", "rofi_command", "log_level"):
        if raw.get(name) is not None:
            setattr(cfg, name, str(raw[name]))
    for name in ("issue_cache", "log_file"):
        if raw.get(name):
            setattr(cfg, name, os.path.expanduser(str(raw[name])))
    if raw.get("request_timeout") is not None:
        cfg.request_timeout = float(raw["request_timeout"])
    cfg.rofi_keys = _merge_keys(DEFAULT_ROFI_KEYS, raw.get("rofi_keys"), "rofi_keys")
    cfg.terminal_keys = _merge_keys(DEFAULT_TERMINAL_KEYS, raw.get("terminal_keys"), "terminal_keys")

    if env.get("TRACKER_URL"):
        cfg.tracker_url = env["TRACKER_URL"]
    elif env.get("TRACKER_PORT"):
        cfg.tracker_url = f"http://localhost:{int(env['TRACKER_PORT'])}"
    if env.get("TRACKER_MENU_SELECTOR"):
        cfg.selector = env["TRACKER_MENU_SELECTOR"]

    cfg.tracker_url = cfg.tracker_url.rstrip("/")
    cfg.selector = cfg.selector.strip().lower()
    if cfg.selector not in SELECTOR_NAMES:
        raise ValueError(f"Config: selector must be one of {', '.join(SELECTOR_NAMES)} (got {cfg.selector!r})")
    if "{key}" not in cfg.browse_url:
        raise ValueError("Config: browse_url needs a '{key}' placeholder.")
    if not shlex.split(cfg.rofi_command):
        raise ValueError("Config: rofi_command must not be empty.")
    _check_terminal_keys(cfg.terminal_keys)
    return cfg


def setup_logging(log_path: str, log_level: str = "ERROR") -> logging.Logger:
    # Reset handlers so --log-level reliably controls file output.
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.setLevel(logging.DEBUG)
    directory = os.path.dirname(os.path.abspath(log_path))
    os.makedirs(directory, exist_ok=True)
    fh = RotatingFileHandler(log_path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    lvl = getattr(logging, str(log_level).upper(), None)
    fh.setLevel(lvl if isinstance(lvl, int) else logging.ERROR)
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    logger.addHandler(fh)
    return logger


# -----------------------------
# Data model
# -----------------------------
@dataclass
class Tracker:
    key: str
    running: bool = False
    duration: str = ""
    description: Optional[str] = None
    start_time: Optional[str] = None
    id: Optional[str] = None

    @classmethod
    def from_json(cls, data: Dict[str, object]) -> "Tracker":
        return cls(
            key=str(data["key"]),
            running=bool(data.get("running")),
            duration=str(data.get("duration") or ""),
            description=(str(data["description"]) if data.get("description") else None),
            start_time=(str(data["start_time"]) if data.get("start_time") else None),
            id=(str(data["id"]) if data.get("id") else None),
        )


@dataclass
class Issue:
    key: str
    summary: str = ""
    fields: Dict[str, object] = field(default_factory=dict)


@dataclass
class Snapshot:
    trackers: List[Tracker]
    total_duration: str


# -----------------------------
# Issue cache
# -----------------------------
def load_issue_cache(path: str) -> Dict[str, Issue]:
    """Read the exported key -> issue mapping.

    Accepts flat entries ({"summary": ...}) as well as the Jira REST shape
    ({"fields": {"summary": ...}}). Non-object entries are skipped.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except FileNotFoundError as exc:
        raise CacheUnavailable(f"Issue cache not found: {path}") from exc
    except (OSError, ValueError) as exc:
        raise CacheUnavailable(f"Issue cache unreadable: {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise CacheUnavailable(f"Issue cache is not a key -> issue mapping: {path}")

    issues: Dict[str, Issue] = {}
    for key, item in raw.items():
        if not isinstance(item, dict):
            continue
        nested = item.get("fields") if isinstance(item.get("fields"), dict) else {}
        summary = item.get("summary") or nested.get("summary") or ""
        extra = {k: v for k, v in item.items() if k not in ("key", "summary")}
        issues[str(key)] = Issue(key=str(item.get("key") or key), summary=str(summary), fields=extra)
    return issues


def load_issues_or_empty(path: str) -> Dict[str, Issue]:
    try:
        return load_issue_cache(path)
    except CacheUnavailable as exc:
        logger.warning("%s; showing trackers without summaries", exc)
        return {}


def run_issue_export(command: str) -> bytes:
    args = shlex.split(command)
    if not args:
        raise ExportFailed("No export_command configured")
    logger.info("Running issue export: %s", args)
    try:
        proc = subprocess.run(args, capture_output=True, check=True)
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or b"")[:200]
        logger.error("Issue export exited with %s: %r", exc.returncode, stderr)
        raise ExportFailed(f"Issue export failed with exit status {exc.returncode}") from exc
    except OSError as exc:
        logger.error("Issue export could not be started: %s", exc)
        raise ExportFailed(f"Issue export could not be started: {exc}") from exc
    return proc.stdout


def _discard(path: str) -> None:
    try:
        os.unlink(path)
    except OSError:
        logger.debug("Temp file %s already gone", path)


def _write_direct(path: str, data: bytes) -> None:
    with open(path, "wb") as f:
        f.write(data)


def replace_file(path: str, data: bytes) -> None:
    """Write data to path via temp file + rename; overwrite in place if that is unavailable."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    try:
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".issues.", suffix=".tmp")
    except OSError:
        logger.warning("Cannot create a temp file in %s; overwriting %s directly", directory, path, exc_info=True)
        _write_direct(path, data)
        return
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError:
        _discard(tmp_path)
        logger.warning("Atomic replace of %s failed; overwriting directly", path, exc_info=True)
        _write_direct(path, data)
    except BaseException:
        _discard(tmp_path)
        raise


def refresh_issue_cache(cfg: Config) -> None:
    data = run_issue_export(cfg.export_command)
    replace_file(cfg.issue_cache, data)
    logger.info("Issue cache refreshed (%d bytes) at %s", len(data), cfg.issue_cache)


# -----------------------------
# Tracker service
# -----------------------------
def _session() -> requests.Session:
    s = requests.Session()
    s.headers["Accept"] = "application/json"
    return s


def _path_key(key: str) -> str:
    return quote(key, safe="")


class TrackerClient:
    """Thin wrapper over the tracker HTTP API. Every call is attempted once."""

    def __init__(self, base_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or _session()

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = self.base_url + path
        logger.debug("%s %s", method, url)
        try:
            r = self.session.request(method, url, timeout=self.timeout, **kwargs)
            r.raise_for_status()
            return r
        except requests.exceptions.RequestException as exc:
            logger.exception("Tracker request failed: %s %s", method, url)
            raise ServiceUnreachable(f"Tracker service: {method} {path} failed ({exc})") from exc

    def _json(self, method: str, path: str) -> object:
        r = self._request(method, path)
        try:
            return r.json()
        except ValueError as exc:
            logger.error("Tracker service returned invalid JSON for %s %s", method, path)
            raise ServiceUnreachable(f"Tracker service: invalid JSON from {path}") from exc

    def list_trackers(self) -> List[Tracker]:
        payload = self._json("GET", "/trackers")
        try:
            return [Tracker.from_json(item) for item in payload]  # type: ignore[union-attr]
        except (KeyError, TypeError, AttributeError) as exc:
            raise ServiceUnreachable(f"Tracker service: malformed tracker list ({exc})") from exc

    def total_duration(self) -> str:
        payload = self._json("GET", "/sum")
        if not isinstance(payload, dict) or "duration" not in payload:
            raise ServiceUnreachable("Tracker service: malformed /sum response")
        return str(payload["duration"])

    def create(self, key: str) -> None:
        self._request("POST", f"/trackers/{_path_key(key)}")

    def start(self, key: str) -> None:
        self._request("POST", f"/trackers/{_path_key(key)}/start")

    def pause(self) -> None:
        self._request("POST", "/tracker/pause")

    def delete(self, key: str) -> None:
        self._request("DELETE", f"/trackers/{_path_key(key)}")

    def set_description(self, key: str, description: str) -> None:
        self._request("PUT", f"/trackers/{_path_key(key)}", json={"description": description})

    def adjust(self, key: str, direction: str, amount: str) -> None:
        if direction not in ("plus", "minus"):
            raise ValueError(f"direction must be 'plus' or 'minus', not {direction!r}")
        self._request("PUT", f"/trackers/{_path_key(key)}", json={direction: amount})

    def submit(self) -> None:
        self._request("POST", "/submit")


def fetch_snapshot(client: TrackerClient) -> Snapshot:
    trackers = client.list_trackers()
    total = client.total_duration()
    logger.debug("Fetched %d trackers (total %s)", len(trackers), total)
    return Snapshot(trackers=trackers, total_duration=total)


# -----------------------------
# Menu rows
# -----------------------------
ICON_WIDTH = 2
KEY_WIDTH = 12
SUMMARY_WIDTH = 30
DURATION_WIDTH = 12

_SINGLE_DIGIT_TOKEN = re.compile(r"(?<!\d)(\d)([a-z]+)")


def _sanitize_cell_text(s: Optional[str]) -> str:
    return (s or "").replace("\n", " ").replace("\r", " ")


def _display_width(text: str) -> int:
    return sum(get_cwidth(ch) for ch in text)


def _truncate(s: Optional[str], maxlen: int) -> str:
    """Cut to at most maxlen display cells, never splitting a wide glyph."""
    out: List[str] = []
    width = 0
    for ch in _sanitize_cell_text(s):
        ch_w = get_cwidth(ch)
        if width + ch_w > maxlen:
            break
        out.append(ch)
        width += ch_w
    return "".join(out)


def _pad_display(text: Optional[str], width: int, align: str = "left") -> str:
    raw = _sanitize_cell_text(text)
    pad = " " * max(0, width - _display_width(raw))
    return pad + raw if align == "right" else raw + pad


def space_duration(duration: Optional[str]) -> str:
    """'1h 2m' -> ' 1h  2m' so single- and double-digit units line up."""
    return _SINGLE_DIGIT_TOKEN.sub(r" \1\2", (duration or "").strip())


class RowKind(enum.Enum):
    TRACKER = "tracker"
    ADD_NEW = "add new"
    REFRESH_ISSUES = "refresh issues"
    SUBMIT_TRACKERS = "submit trackers"


SENTINEL_KINDS = (RowKind.ADD_NEW, RowKind.REFRESH_ISSUES, RowKind.SUBMIT_TRACKERS)


@dataclass
class MenuRow:
    kind: RowKind
    icon: str = ""
    key: str = ""
    summary: str = ""
    duration: str = ""
    tracker: Optional[Tracker] = None

    @property
    def text(self) -> str:
        if self.kind is not RowKind.TRACKER:
            return f"{_pad_display('', ICON_WIDTH)} {self.kind.value}"
        return " ".join((
            _pad_display(self.icon, ICON_WIDTH),
            _pad_display(self.key, KEY_WIDTH),
            _pad_display(self.summary, SUMMARY_WIDTH),
            _pad_display(self.duration, DURATION_WIDTH, align="right"),
        ))


@dataclass
class Menu:
    rows: List[MenuRow]
    running_index: Optional[int]
    total_duration: str = ""

    @property
    def title(self) -> str:
        return f"total {self.total_duration or '0s'}"

    def row_at(self, index: Optional[int]) -> Optional[MenuRow]:
        if index is None or not 0 <= index < len(self.rows):
            return None
        return self.rows[index]

    def tracked_keys(self) -> List[str]:
        return [r.key for r in self.rows if r.kind is RowKind.TRACKER]


def build_menu(trackers: Sequence[Tracker], issues: Dict[str, Issue], cfg: Config, total_duration: str = "") -> Menu:
    rows: List[MenuRow] = []
    running_index: Optional[int] = None
    for idx, tracker in enumerate(trackers):
        if tracker.running and running_index is None:
            running_index = idx
        issue = issues.get(tracker.key)
        rows.append(MenuRow(
            kind=RowKind.TRACKER,
            icon=cfg.running_icon if tracker.running else cfg.paused_icon,
            key=tracker.key,
            summary=_truncate(issue.summary if issue else "", SUMMARY_WIDTH),
            duration=space_duration(tracker.duration),
            tracker=tracker,
        ))
    rows.extend(MenuRow(kind=kind) for kind in SENTINEL_KINDS)
    return Menu(rows=rows, running_index=running_index, total_duration=total_duration)


# -----------------------------
# Selection interface
# -----------------------------
@dataclass
class SelectionOutcome:
    signal: SelectionSignal
    index: Optional[int] = None
    text: str = ""


class Selector:
    """Front-end that shows rows and reports which one was chosen, and how."""

    def select(self, rows: Sequence[MenuRow], title: str, selected: Optional[int] = None) -> SelectionOutcome:
        raise NotImplementedError

    def pick(self, lines: Sequence[str], title: str) -> Optional[int]:
        raise NotImplementedError

    def prompt(self, title: str, initial: str = "") -> Optional[str]:
        raise NotImplementedError


ROFI_CUSTOM_EXIT_BASE = 10


def _parse_index(out: str, count: int) -> Optional[int]:
    try:
        idx = int(out.strip())
    except ValueError:
        return None
    return idx if 0 <= idx < count else None


class RofiSelector(Selector):
    def __init__(self, cfg: Config):
        self.command = shlex.split(cfg.rofi_command)
        self.bindings = cfg.custom_bindings(cfg.rofi_keys)

    def _run(self, args: List[str], lines: Sequence[str]) -> Tuple[int, str]:
        cmd = self.command + ["-dmenu"] + args
        logger.debug("Running %s", cmd)
        try:
            proc = subprocess.run(cmd, input="\n".join(lines), capture_output=True, text=True, check=False)
        except OSError as exc:
            raise TrackerMenuError(f"Unable to launch {' '.join(self.command)!r}: {exc}") from exc
        return proc.returncode, (proc.stdout or "").rstrip("\n")

    def _help(self) -> str:
        return "   ".join(f"{key}: {sig.value.replace('_', ' ')}" for sig, key in self.bindings)

    def signal_for(self, code: int) -> SelectionSignal:
        if code == 0:
            return SelectionSignal.DEFAULT_ACCEPT
        if code == 1:
            return SelectionSignal.CANCEL
        slot = code - ROFI_CUSTOM_EXIT_BASE
        if 0 <= slot < len(self.bindings):
            return self.bindings[slot][0]
        logger.warning("Unexpected rofi exit status %s; treating as cancel", code)
        return SelectionSignal.CANCEL

    def select(self, rows: Sequence[MenuRow], title: str, selected: Optional[int] = None) -> SelectionOutcome:
        args = ["-i", "-no-custom", "-format", "i", "-p", title]
        if selected is not None:
            args += ["-selected-row", str(selected)]
        for n, (_sig, key) in enumerate(self.bindings, start=1):
            args += [f"-kb-custom-{n}", key]
        if self.bindings:
            args += ["-mesg", self._help()]
        code, out = self._run(args, [r.text for r in rows])
        signal = self.signal_for(code)
        if signal is SelectionSignal.CANCEL:
            return SelectionOutcome(signal)
        index = _parse_index(out, len(rows))
        return SelectionOutcome(signal, index, rows[index].text if index is not None else "")

    def pick(self, lines: Sequence[str], title: str) -> Optional[int]:
        code, out = self._run(["-i", "-no-custom", "-format", "i", "-p", title], lines)
        if code != 0:
            return None
        return _parse_index(out, len(lines))

    def prompt(self, title: str, initial: str = "") -> Optional[str]:
        args = ["-p", title, "-format", "s"]
        if initial:
            args += ["-filter", initial]
        code, out = self._run(args, [initial] if initial else [])
        return out if code == 0 else None


MENU_STYLE: Dict[str, str] = {
    'menu.title': 'bold #ffd75f',
    'menu.query': '#87d7ff',
    'menu.row': '#f0f0f0',
    'menu.cursor': 'reverse bold',
    'menu.empty': 'ansigray',
}


class SelectionState:
    """Incremental filter + cursor behind the terminal menu."""

    def __init__(self, lines: Sequence[str], selected: Optional[int] = None):
        self.lines = list(lines)
        self.query = ""
        self.cursor = 0
        if selected is not None and 0 <= selected < len(self.lines):
            self.cursor = selected

    def visible(self) -> List[int]:
        q = self.query.lower()
        return [i for i, line in enumerate(self.lines) if q in line.lower()]

    def type(self, text: str) -> None:
        self.query += text
        self.cursor = 0

    def backspace(self) -> None:
        self.query = self.query[:-1]
        self.cursor = 0

    def move(self, delta: int) -> None:
        count = len(self.visible())
        if count:
            self.cursor = max(0, min(count - 1, self.cursor + delta))

    def current(self) -> Optional[int]:
        vis = self.visible()
        if not vis:
            return None
        return vis[min(self.cursor, len(vis) - 1)]

    def fragments(self) -> List[Tuple[str, str]]:
        vis = self.visible()
        if not vis:
            return [("class:menu.empty", "No match.")]
        frags: List[Tuple[str, str]] = []
        current = self.current()
        for i in vis:
            style = "class:menu.cursor" if i == current else "class:menu.row"
            frags.append((style, self.lines[i]))
            frags.append(("", "\n"))
        frags.pop()
        return frags


def build_key_bindings(state: SelectionState, custom: Sequence[Tuple[SelectionSignal, str]] = ()) -> KeyBindings:
    kb = KeyBindings()

    def finish(event, signal: SelectionSignal) -> None:
        index = state.current()
        text = state.lines[index] if index is not None else ""
        event.app.exit(result=SelectionOutcome(signal, index, text))

    @kb.add('enter')
    def _(event):
        finish(event, SelectionSignal.DEFAULT_ACCEPT)

    @kb.add('escape', eager=True)
    @kb.add('c-c')
    def _(event):
        event.app.exit(result=SelectionOutcome(SelectionSignal.CANCEL))

    @kb.add('up')
    @kb.add('c-p')
    def _(event):
        state.move(-1)

    @kb.add('down')
    @kb.add('c-n')
    def _(event):
        state.move(1)

    @kb.add('backspace')
    def _(event):
        state.backspace()

    @kb.add(Keys.Any)
    def _(event):
        if event.data and event.data.isprintable():
            state.type(event.data)

    def bind(signal: SelectionSignal, key: str) -> None:
        @kb.add(key)
        def _(event):
            finish(event, signal)

    for signal, key in custom:
        bind(signal, key)
    return kb


class TerminalSelector(Selector):
    def __init__(self, cfg: Config):
        self.bindings = cfg.custom_bindings(cfg.terminal_keys)

    def _run(self, state: SelectionState, title: str, kb: KeyBindings) -> SelectionOutcome:
        header = Window(
            content=FormattedTextControl(lambda: [("class:menu.title", f"{title}> "), ("class:menu.query", state.query)]),
            height=1,
        )
        body = Window(content=FormattedTextControl(state.fragments), wrap_lines=False, always_hide_cursor=True)
        app = Application(layout=Layout(HSplit([header, body])), key_bindings=kb, full_screen=False,
                          style=Style.from_dict(MENU_STYLE))
        result = app.run()
        return result if isinstance(result, SelectionOutcome) else SelectionOutcome(SelectionSignal.CANCEL)

    def select(self, rows: Sequence[MenuRow], title: str, selected: Optional[int] = None) -> SelectionOutcome:
        state = SelectionState([r.text for r in rows], selected)
        return self._run(state, title, build_key_bindings(state, self.bindings))

    def pick(self, lines: Sequence[str], title: str) -> Optional[int]:
        state = SelectionState(lines)
        outcome = self._run(state, title, build_key_bindings(state))
        if outcome.signal is not SelectionSignal.DEFAULT_ACCEPT:
            return None
        return outcome.index

    def prompt(self, title: str, initial: str = "") -> Optional[str]:
        try:
            return PromptSession().prompt(f"{title}: ", default=initial)
        except (KeyboardInterrupt, EOFError):
            return None


def make_selector(cfg: Config) -> Selector:
    if cfg.selector == "terminal":
        return TerminalSelector(cfg)
    return RofiSelector(cfg)


# -----------------------------
# Actions
# -----------------------------
class ActionKind(enum.Enum):
    ADD_TRACKER = "add_tracker"
    REFRESH_ISSUES = "refresh_issues"
    SUBMIT = "submit"
    PAUSE = "pause"
    START = "start"
    DELETE = "delete"
    EDIT_DESCRIPTION = "edit_description"
    OPEN_ISSUE = "open_issue"
    ADJUST_DURATION = "adjust_duration"


@dataclass
class Action:
    kind: ActionKind
    key: Optional[str] = None
    description: Optional[str] = None


_SENTINEL_ACTIONS: Dict[RowKind, ActionKind] = {
    RowKind.ADD_NEW: ActionKind.ADD_TRACKER,
    RowKind.REFRESH_ISSUES: ActionKind.REFRESH_ISSUES,
    RowKind.SUBMIT_TRACKERS: ActionKind.SUBMIT,
}

_TRACKER_ACTIONS: Dict[SelectionSignal, ActionKind] = {
    SelectionSignal.DELETE: ActionKind.DELETE,
    SelectionSignal.EDIT_DESCRIPTION: ActionKind.EDIT_DESCRIPTION,
    SelectionSignal.OPEN: ActionKind.OPEN_ISSUE,
    SelectionSignal.ADJUST_DURATION: ActionKind.ADJUST_DURATION,
}


def resolve_action(row: Optional[MenuRow], signal: SelectionSignal) -> Optional[Action]:
    """Map a chosen row and the way it was chosen to at most one action."""
    if row is None or signal is SelectionSignal.CANCEL:
        return None
    if row.kind is not RowKind.TRACKER:
        if signal is not SelectionSignal.DEFAULT_ACCEPT:
            return None
        return Action(_SENTINEL_ACTIONS[row.kind])
    if signal is SelectionSignal.DEFAULT_ACCEPT:
        if row.tracker is not None and row.tracker.running:
            return Action(ActionKind.PAUSE)
        return Action(ActionKind.START, key=row.key)
    kind = _TRACKER_ACTIONS.get(signal)
    if kind is None:
        return None
    description = row.tracker.description if row.tracker is not None else None
    return Action(kind, key=row.key, description=description)


def resolve_outcome(menu: Menu, outcome: SelectionOutcome) -> Optional[Action]:
    return resolve_action(menu.row_at(outcome.index), outcome.signal)


# Unit case is significant to the service (1M is a month, 1m a minute).
_ADJUSTMENT_RE = re.compile(r"^([+-]?)\s*(\d+[A-Za-z]+(?:\s+\d+[A-Za-z]+)*)$")


def parse_adjustment(text: Optional[str]) -> Optional[Tuple[str, str]]:
    """'+15m' / '15m' -> ('plus', '15m'); '-1h 5m' -> ('minus', '1h 5m')."""
    m = _ADJUSTMENT_RE.match((text or "").strip())
    if not m:
        return None
    sign, amount = m.groups()
    return ("minus" if sign == "-" else "plus"), re.sub(r"\s+", " ", amount)


class ActionRunner:
    """Performs the single side effect behind a resolved action."""

    def __init__(
        self,
        cfg: Config,
        client: TrackerClient,
        selector: Selector,
        issues: Dict[str, Issue],
        opener: Callable[[str], bool] = webbrowser.open,
    ):
        self.cfg = cfg
        self.client = client
        self.selector = selector
        self.issues = issues
        self.opener = opener
        self._handlers: Dict[ActionKind, Callable[[Action, Menu], bool]] = {
            ActionKind.ADD_TRACKER: self._add_tracker,
            ActionKind.REFRESH_ISSUES: self._refresh_issues,
            ActionKind.SUBMIT: self._submit,
            ActionKind.PAUSE: self._pause,
            ActionKind.START: self._start,
            ActionKind.DELETE: self._delete,
            ActionKind.EDIT_DESCRIPTION: self._edit_description,
            ActionKind.OPEN_ISSUE: self._open_issue,
            ActionKind.ADJUST_DURATION: self._adjust_duration,
        }

    def perform(self, action: Optional[Action], menu: Menu) -> bool:
        """Return True when an external effect was applied."""
        if action is None:
            logger.debug("Nothing to do")
            return False
        handler = self._handlers.get(action.kind)
        if handler is None:
            logger.warning("No handler for %s", action.kind)
            return False
        return handler(action, menu)

    def _add_tracker(self, action: Action, menu: Menu) -> bool:
        tracked = set(menu.tracked_keys())
        candidates = [issue for issue in self.issues.values() if issue.key not in tracked]
        if not candidates:
            logger.info("No untracked issues in the cache")
            return False
        lines = [f"{_pad_display(i.key, KEY_WIDTH)} {_sanitize_cell_text(i.summary)}" for i in candidates]
        idx = self.selector.pick(lines, "add tracker")
        if idx is None:
            return False
        key = candidates[idx].key
        self.client.create(key)
        logger.info("Created and started tracker %s", key)
        return True

    def _refresh_issues(self, action: Action, menu: Menu) -> bool:
        refresh_issue_cache(self.cfg)
        return True

    def _submit(self, action: Action, menu: Menu) -> bool:
        self.client.submit()
        logger.info("Submitted trackers")
        return True

    def _pause(self, action: Action, menu: Menu) -> bool:
        self.client.pause()
        logger.info("Paused running tracker")
        return True

    def _start(self, action: Action, menu: Menu) -> bool:
        self.client.start(action.key or "")
        logger.info("Started tracker %s", action.key)
        return True

    def _delete(self, action: Action, menu: Menu) -> bool:
        self.client.delete(action.key or "")
        logger.info("Deleted tracker %s", action.key)
        return True

    def _edit_description(self, action: Action, menu: Menu) -> bool:
        text = self.selector.prompt(f"{action.key} description", action.description or "")
        if text is None:
            return False
        self.client.set_description(action.key or "", text)
        logger.info("Set description of %s", action.key)
        return True

    def _open_issue(self, action: Action, menu: Menu) -> bool:
        url = self.cfg.browse_url.format(key=quote(action.key or "", safe=""))
        if not self.opener(url):
            logger.warning("No browser accepted %s", url)
        else:
            logger.info("Opened %s", url)
        return True

    def _adjust_duration(self, action: Action, menu: Menu) -> bool:
        text = self.selector.prompt(f"{action.key} adjust (+15m / -10m)", "")
        if text is None:
            return False
        parsed = parse_adjustment(text)
        if parsed is None:
            logger.warning("Ignoring unparsable adjustment %r for %s", text, action.key)
            return False
        direction, amount = parsed
        self.client.adjust(action.key or "", direction, amount)
        logger.info("Adjusted %s: %s %s", action.key, direction, amount)
        return True


# -----------------------------
# CLI
# -----------------------------
def run(
    cfg: Config,
    *,
    no_ui: bool = False,
    refresh_only: bool = False,
    client: Optional[TrackerClient] = None,
    selector: Optional[Selector] = None,
    opener: Callable[[str], bool] = webbrowser.open,
) -> int:
    if refresh_only:
        refresh_issue_cache(cfg)
        return 0

    client = client or TrackerClient(cfg.tracker_url, cfg.request_timeout)
    snapshot = fetch_snapshot(client)
    issues = load_issues_or_empty(cfg.issue_cache)
    menu = build_menu(snapshot.trackers, issues, cfg, snapshot.total_duration)

    if no_ui:
        print(menu.title)
        for row in menu.rows:
            print(row.text)
        return 0

    selector = selector or make_selector(cfg)
    outcome = selector.select(menu.rows, menu.title, menu.running_index)
    logger.debug("Selection: signal=%s index=%s", outcome.signal.value, outcome.index)
    action = resolve_outcome(menu, outcome)
    ActionRunner(cfg, client, selector, issues, opener).perform(action, menu)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Pop-up menu for the time-tracker service")
    ap.add_argument("--config", help=f"Path to YAML config (default {DEFAULT_CONFIG_PATH}, optional)")
    ap.add_argument("--selector", choices=SELECTOR_NAMES, help="Menu front-end (overrides config)")
    ap.add_argument("--log-level", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    ap.add_argument("--no-ui", action="store_true", help="Print the menu rows and exit")
    ap.add_argument("--refresh-issues", action="store_true", help="Re-run the issue export and exit")
    args = ap.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Failed to load config: {e}", file=sys.stderr)
        return 2
    if args.selector:
        cfg.selector = args.selector
    try:
        setup_logging(cfg.log_file, args.log_level or cfg.log_level)
    except OSError as e:
        print(f"Failed to open log file {cfg.log_file}: {e}", file=sys.stderr)
        return 2

    try:
        return run(cfg, no_ui=args.no_ui, refresh_only=args.refresh_issues)
    except TrackerMenuError as e:
        logger.error("%s", e)
        print(str(e), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
