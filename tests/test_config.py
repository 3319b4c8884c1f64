from __future__ import annotations

import argparse
import io
import logging

import pytest

from agent_shells.cli.main import _settings_from_args, run_async
from agent_shells.config import DEFAULT_PORT, DEFAULT_TICKET_PROMPT, LocalConfig, Settings, TimingConfig
from agent_shells.logging_config import ROOT_LOGGER, get_log_level, setup_logging
from agent_shells.store import DataStore


def test_timing_overrides_from_environment(caplog):
    timing = TimingConfig.from_env(
        {
            "AGENT_SHELLS_PERMISSION_TIMEOUT": "4",
            "AGENT_SHELLS_DECAY_AMOUNT": "25",
            "AGENT_SHELLS_STARTUP_DELAY": "soon",
        }
    )

    assert timing.permission_timeout == 4.0
    assert timing.decay_amount == 25
    assert isinstance(timing.decay_amount, int)
    assert timing.startup_delay == TimingConfig().startup_delay
    assert "startup_delay" in caplog.text


def test_settings_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("AGENT_SHELLS_LAUNCH_CWD", str(tmp_path))
    monkeypatch.setenv("AGENT_SHELLS_PORT", "not-a-port")
    monkeypatch.delenv("PORT", raising=False)
    monkeypatch.setenv("AGENT_SHELLS_VERBOSE", "yes")
    monkeypatch.setenv("AGENT_SHELLS_SCROLLBACK_CAP", "50")
    monkeypatch.setenv("AGENT_SHELLS_TICKET_PROMPT_DELAY", "3")
    monkeypatch.setenv("AGENT_SHELLS_EVENT_STREAMS", "1")

    settings = Settings.from_env()

    assert settings.launch_cwd == str(tmp_path.resolve())
    assert settings.port == DEFAULT_PORT
    assert settings.verbose is True
    assert settings.scrollback_cap == 50
    assert settings.timing.ticket_prompt_delay == 3.0
    assert settings.event_streams is True


def test_cli_arguments_override_environment(monkeypatch, tmp_path):
    monkeypatch.delenv("AGENT_SHELLS_PORT", raising=False)
    monkeypatch.setenv("PORT", "7001")
    args = argparse.Namespace(
        host="0.0.0.0",
        port=None,
        launch_cwd=str(tmp_path),
        data_dir=None,
        agents_file=None,
        verbose=False,
    )

    settings = _settings_from_args(args)

    assert settings.host == "0.0.0.0"
    assert settings.port == 7001
    assert settings.launch_cwd == str(tmp_path.resolve())


@pytest.mark.asyncio
async def test_local_config_keeps_the_key_out_of_config_json(tmp_path):
    config = LocalConfig(DataStore(tmp_path / "state"))

    assert (await config.load())["default_base_branch"] == "main"
    assert await config.ticket_prompt_template() == DEFAULT_TICKET_PROMPT

    await config.save({"default_base_branch": "develop", "ticket_prompt_template": None, "api_key": "sk-1"})
    assert (await config.load())["default_base_branch"] == "develop"
    assert "sk-1" not in config.store.config_file.read_text(encoding="utf-8")
    assert await config.api_key() == "sk-1"

    await config.save({"api_key": ""})
    assert await config.api_key() is None
    assert (await config.public_view())["has_api_key"] is False


@pytest.mark.asyncio
async def test_list_command_reports_empty_state(tmp_path, capsys):
    settings = Settings(launch_cwd=str(tmp_path), data_dir=str(tmp_path / "state"))

    await run_async(argparse.Namespace(command="list"), settings)

    assert "No saved sessions" in capsys.readouterr().out


@pytest.fixture
def restore_root_logger():
    logger = logging.getLogger(ROOT_LOGGER)
    saved = (list(logger.handlers), logger.level, logger.propagate)
    yield logger
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])
    logger.propagate = saved[2]


def test_log_level_resolution(monkeypatch):
    monkeypatch.setenv("AGENT_SHELLS_LOG_LEVEL", "warning")
    assert get_log_level() == logging.WARNING
    assert get_log_level(verbose=True) == logging.DEBUG
    monkeypatch.setenv("AGENT_SHELLS_LOG_LEVEL", "chatty")
    assert get_log_level() == logging.INFO


def test_setup_logging_writes_to_the_given_stream(restore_root_logger, monkeypatch):
    monkeypatch.delenv("AGENT_SHELLS_LOG_LEVEL", raising=False)
    stream = io.StringIO()

    setup_logging(stream=stream)
    logging.getLogger("agent_shells.supervisor").info("Created session-1")
    logging.getLogger("agent_shells.supervisor").debug("hidden")

    output = stream.getvalue()
    assert "INFO agent_shells.supervisor: Created session-1" in output
    assert "hidden" not in output


def test_non_positive_timing_overrides_are_ignored(caplog):
    defaults = TimingConfig()

    timing = TimingConfig.from_env(
        {
            "AGENT_SHELLS_DECAY_INTERVAL": "0",
            "AGENT_SHELLS_SNAPSHOT_INTERVAL": "-5",
            "AGENT_SHELLS_PERMISSION_TIMEOUT": "nan",
            "AGENT_SHELLS_STARTUP_DELAY": "0",
        }
    )

    assert timing.decay_interval == defaults.decay_interval
    assert timing.snapshot_interval == defaults.snapshot_interval
    assert timing.permission_timeout == defaults.permission_timeout
    assert timing.startup_delay == 0.0
    assert "decay_interval" in caplog.text
