import argparse

import pytest

from pester.cmd.server import build_config
from pester.server.config import ServerConfig, load_config, parse_listen


def test_defaults():
    cfg = load_config(env={})
    assert cfg.listen == "0.0.0.0:4000"
    assert cfg.tcp_listen == "0.0.0.0:4001"
    assert cfg.mailbox_limit == 500
    assert cfg.auto_rejoin is True


def test_yaml_file(tmp_path):
    path = tmp_path / "server.yaml"
    path.write_text("listen: 127.0.0.1:9000\ntcp_listen: null\nmailbox_limit: 0\nlog_level: debug\n")

    cfg = load_config(path, env={})

    assert cfg.listen == "127.0.0.1:9000"
    assert cfg.tcp_listen is None
    assert cfg.mailbox_limit == 0
    assert cfg.log_level == "DEBUG"


def test_environment_overrides(tmp_path):
    path = tmp_path / "server.yaml"
    path.write_text("listen: 127.0.0.1:9000\n")

    cfg = load_config(path, env={"PESTER_LISTEN": "0.0.0.0:8080", "PESTER_TCP_LISTEN": ""})

    assert cfg.listen == "0.0.0.0:8080"
    assert cfg.tcp_listen is None


@pytest.mark.parametrize(
    "content",
    [
        "listen: nowhere\n",
        "mailbox_limit: -3\n",
        "log_level: LOUD\n",
        "unknown_key: 1\n",
        "- just\n- a list\n",
    ],
)
def test_invalid_files_raise_value_error(tmp_path, content):
    path = tmp_path / "server.yaml"
    path.write_text(content)
    with pytest.raises(ValueError):
        load_config(path, env={})


def test_parse_listen():
    assert parse_listen("localhost:4000") == ("localhost", 4000)
    assert parse_listen("::1:4000") == ("::1", 4000)
    with pytest.raises(ValueError):
        parse_listen(":4000")


def test_command_line_overrides(tmp_path, monkeypatch):
    monkeypatch.delenv("PESTER_LISTEN", raising=False)
    monkeypatch.delenv("PESTER_TCP_LISTEN", raising=False)
    path = tmp_path / "server.yaml"
    path.write_text("mailbox_limit: 7\n")
    args = argparse.Namespace(config=str(path), listen="127.0.0.1:5000", tcp_listen="", log_level="warning")

    cfg = build_config(args)

    assert isinstance(cfg, ServerConfig)
    assert cfg.listen == "127.0.0.1:5000"
    assert cfg.tcp_listen is None
    assert cfg.mailbox_limit == 7
    assert cfg.log_level == "WARNING"
