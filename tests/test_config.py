import logging
import os
from logging.handlers import RotatingFileHandler

import pytest

import tracker_menu as tm


def _write(path, text):
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_missing_default_file_gives_defaults(tmp_path, monkeypatch):
    monkeypatch.setattr(tm, "DEFAULT_CONFIG_PATH", str(tmp_path / "absent.yaml"))
    cfg = tm.load_config(None, env={})
    assert cfg.tracker_url == "http://localhost:8080"
    assert cfg.selector == "rofi"
    assert cfg.rofi_keys == tm.DEFAULT_ROFI_KEYS
    assert cfg.terminal_keys == tm.DEFAULT_TERMINAL_KEYS
    assert cfg.request_timeout == 10.0


def test_yaml_values_and_path_expansion(tmp_path):
    path = _write(tmp_path / "cfg.yaml", """
tracker_url: http://tracker.lan:9000/
issue_cache: ~/jira/issues.json
export_command: jira-export --project AB
browse_url: https://acme.atlassian.net/browse/{key}
selector: Terminal
request_timeout: 2.5
rofi_keys:
  delete: Control+x
terminal_keys:
  open: c-g
""")
    cfg = tm.load_config(path, env={})
    assert cfg.tracker_url == "http://tracker.lan:9000"
    assert cfg.issue_cache == os.path.expanduser("~/jira/issues.json")
    assert cfg.export_command == "jira-export --project AB"
    assert cfg.selector == "terminal"
    assert cfg.request_timeout == 2.5
    assert cfg.rofi_keys["delete"] == "Control+x"
    assert cfg.rofi_keys["open"] == tm.DEFAULT_ROFI_KEYS["open"]
    assert cfg.terminal_keys["open"] == "c-g"


def test_env_overrides_file(tmp_path):
    path = _write(tmp_path / "cfg.yaml", "tracker_url: http://from-file:1\nselector: rofi\n")
    cfg = tm.load_config(path, env={"TRACKER_PORT": "8181", "TRACKER_MENU_SELECTOR": "terminal"})
    assert cfg.tracker_url == "http://localhost:8181"
    assert cfg.selector == "terminal"
    cfg = tm.load_config(path, env={"TRACKER_URL": "http://env:2/", "TRACKER_PORT": "8181"})
    assert cfg.tracker_url == "http://env:2"


@pytest.mark.parametrize("text", [
    "- just\n- a list\n",
    "selector: dmenu\n",
    "rofi_keys: Alt+d\n",
    "rofi_keys:\n  explode: Alt+x\n",
    "browse_url: https://jira.example.com/browse/\n",
    "rofi_command: '  '\n",
    "terminal_keys:\n  delete: ctrl+d\n",
])
def test_invalid_config_raises_value_error(tmp_path, text):
    path = _write(tmp_path / "cfg.yaml", text)
    with pytest.raises(ValueError):
        tm.load_config(path, env={})


def test_custom_bindings_skip_blank_keys():
    cfg = tm.Config()
    cfg.rofi_keys["open"] = ""
    assert cfg.custom_bindings(cfg.rofi_keys) == [
        (tm.SelectionSignal.DELETE, "Alt+1"),
        (tm.SelectionSignal.EDIT_DESCRIPTION, "Alt+2"),
        (tm.SelectionSignal.ADJUST_DURATION, "Alt+4"),
    ]


def test_setup_logging_installs_single_rotating_handler(tmp_path):
    log_path = tmp_path / "logs" / "tracker_menu.log"
    tm.setup_logging(str(log_path), "INFO")
    logger = tm.setup_logging(str(log_path), "debug")
    assert len(logger.handlers) == 1
    handler = logger.handlers[0]
    assert isinstance(handler, RotatingFileHandler)
    assert handler.level == logging.DEBUG
    logger.info("hello")
    handler.flush()
    assert "INFO hello" in log_path.read_text(encoding="utf-8")


def test_setup_logging_unknown_level_defaults_to_error(tmp_path):
    logger = tm.setup_logging(str(tmp_path / "x.log"), "chatty")
    assert logger.handlers[0].level == logging.ERROR


def test_explicit_missing_config_file_is_an_error(tmp_path):
    with pytest.raises(FileNotFoundError):
        tm.load_config(str(tmp_path / "absent.yaml"), env={})


def test_terminal_keys_accept_prompt_toolkit_names(tmp_path):
    path = _write(tmp_path / "cfg.yaml", "terminal_keys:\n  delete: f5\n  open: ''\n")
    cfg = tm.load_config(path, env={})
    assert cfg.terminal_keys["delete"] == "f5"
    assert cfg.terminal_keys["open"] == ""
