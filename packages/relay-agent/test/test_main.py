#!/usr/bin/env python3
"""Tests for the service entry point."""

import logging
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import main


def make_agent(run_error=None):
    agent = MagicMock()
    agent.run = AsyncMock(side_effect=run_error)
    return agent


class TestMain:

    @pytest.mark.asyncio
    async def test_configuration_error_exits_with_checklist(self, caplog):
        with patch.object(sys, "argv", ["main.py"]), \
                patch("main.RelayAgent.from_env", side_effect=ValueError("RPC_URL is required")), \
                caplog.at_level(logging.ERROR, logger="main"):
            with pytest.raises(SystemExit) as exc_info:
                await main.main()

        assert exc_info.value.code == 1
        assert "Configuration Error: RPC_URL is required" in caplog.text
        assert "Please check your environment variables" in caplog.text

    @pytest.mark.asyncio
    async def test_runtime_value_error_is_fatal_not_configuration(self, caplog):
        agent = make_agent(ValueError("eid() returned garbage"))
        with patch.object(sys, "argv", ["main.py"]), \
                patch("main.RelayAgent.from_env", return_value=agent), \
                caplog.at_level(logging.ERROR, logger="main"):
            with pytest.raises(SystemExit) as exc_info:
                await main.main()

        assert exc_info.value.code == 1
        assert "Fatal Error: eid() returned garbage" in caplog.text
        assert "Configuration Error" not in caplog.text

    @pytest.mark.asyncio
    async def test_failed_scanner_exits_nonzero(self):
        agent = make_agent(RuntimeError("scanner task failed: down"))
        with patch.object(sys, "argv", ["main.py"]), \
                patch("main.RelayAgent.from_env", return_value=agent):
            with pytest.raises(SystemExit) as exc_info:
                await main.main()

        assert exc_info.value.code == 1

    @pytest.mark.asyncio
    async def test_clean_shutdown_returns(self):
        agent = make_agent()
        with patch.object(sys, "argv", ["main.py", "--local"]), \
                patch("main.RelayAgent.from_env", return_value=agent) as from_env:
            await main.main()

        from_env.assert_called_once_with(local_mode=True)
        agent.run.assert_awaited_once()
