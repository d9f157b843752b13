"""Unit tests for cluster wait conditions."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from e2e_setup.config import WaitCondition
from e2e_setup.environment.waiter import ConditionWaiter, validate_condition
from e2e_setup.errors import ConfigurationError, WaitError


def _process(returncode: int, stderr: bytes = b"") -> MagicMock:
    process = MagicMock()
    process.returncode = returncode
    process.communicate = AsyncMock(return_value=(b"", stderr))
    return process


@pytest.mark.cli_unit
class TestValidateCondition:
    """Tests for validate_condition."""

    def test_valid(self):
        """Test valid conditions."""
        validate_condition(WaitCondition("pod", "condition=Ready", label_selector="app=x"))
        validate_condition(WaitCondition("deployment/foo", "condition=Available"))

    def test_name_and_selector_exclusive(self):
        """Test a named resource cannot have a label selector."""
        with pytest.raises(ConfigurationError, match="label selector can not be set"):
            validate_condition(WaitCondition("pod/foo", "condition=Ready", label_selector="app=x"))

    def test_empty_resource(self):
        """Test a condition without a resource."""
        with pytest.raises(ConfigurationError, match="resource must be provided"):
            validate_condition(WaitCondition("", "condition=Ready"))

    def test_empty_condition(self):
        """Test a condition without a for clause."""
        with pytest.raises(ConfigurationError, match="has no condition"):
            validate_condition(WaitCondition("pod", ""))


@pytest.mark.cli_unit
class TestConditionWaiter:
    """Tests for ConditionWaiter."""

    def test_build_command_with_selector(self):
        """Test the wait command with a label selector."""
        waiter = ConditionWaiter(Path("/tmp/kc"), 600)
        cmd = waiter.build_command(
            WaitCondition("pod", "condition=Ready", namespace="apps", label_selector="app=x", timeout=30)
        )
        assert cmd == [
            "kubectl",
            "--kubeconfig",
            "/tmp/kc",
            "-n",
            "apps",
            "wait",
            "--for=condition=Ready",
            "--timeout=30s",
            "pod",
            "-l",
            "app=x",
        ]

    def test_build_command_kind_only_waits_on_all(self):
        """Test a bare kind waits on all resources."""
        cmd = ConditionWaiter(None, 600).build_command(WaitCondition("pod", "condition=Ready"))
        assert cmd[0] == "kubectl"
        assert "--kubeconfig" not in cmd
        assert "--timeout=600s" in cmd
        assert cmd[-1] == "--all"

    def test_build_command_single_resource(self):
        """Test the wait command for one resource."""
        cmd = ConditionWaiter(None, 600).build_command(WaitCondition("deployment/foo", "condition=Available"))
        assert cmd[-1] == "deployment/foo"

    @pytest.mark.asyncio
    async def test_invalid_condition_starts_nothing(self):
        """Test validation runs before any waiter starts."""
        conditions = [
            WaitCondition("pod", "condition=Ready"),
            WaitCondition("pod/foo", "condition=Ready", label_selector="app=x"),
        ]
        with patch("asyncio.create_subprocess_exec", new_callable=AsyncMock) as mock_exec:
            with pytest.raises(ConfigurationError):
                await ConditionWaiter(None, 60).wait_all(conditions)

        mock_exec.assert_not_called()

    @pytest.mark.asyncio
    async def test_wait_all_success(self):
        """Test every condition is waited on."""
        conditions = [WaitCondition("pod", "condition=Ready"), WaitCondition("svc/foo", "jsonpath={.x}")]
        with patch("asyncio.create_subprocess_exec", new_callable=AsyncMock) as mock_exec:
            mock_exec.return_value = _process(0)
            await ConditionWaiter(None, 60).wait_all(conditions)

        assert mock_exec.await_count == 2

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_others(self):
        """Test a failing waiter lets the others finish."""
        finished = []

        async def _exec(*cmd, **kwargs):
            resource = cmd[cmd.index("wait") + 3]
            if resource == "pod/bad":
                return _process(1, b"timed out waiting for the condition")

            async def _communicate():
                await asyncio.sleep(0.05)
                finished.append(resource)
                return b"", b""

            process = MagicMock()
            process.returncode = 0
            process.communicate = _communicate
            return process

        conditions = [WaitCondition("pod/bad", "condition=Ready"), WaitCondition("pod/slow", "condition=Ready")]
        with patch("asyncio.create_subprocess_exec", side_effect=_exec):
            with pytest.raises(WaitError, match="timed out waiting for the condition"):
                await ConditionWaiter(None, 60).wait_all(conditions)

        assert finished == ["pod/slow"]

    @pytest.mark.asyncio
    async def test_empty(self):
        """Test no conditions starts nothing."""
        with patch("asyncio.create_subprocess_exec", new_callable=AsyncMock) as mock_exec:
            await ConditionWaiter(None, 60).wait_all([])
        mock_exec.assert_not_called()

    @pytest.mark.asyncio
    async def test_kubectl_missing(self):
        """Test a missing kubectl binary."""
        with patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError):
            with pytest.raises(WaitError, match="kubectl not found"):
                await ConditionWaiter(None, 60).wait(WaitCondition("pod", "condition=Ready"))

    @pytest.mark.asyncio
    async def test_cancelled_wait_kills_kubectl(self):
        """Test cancelling a waiter kills its kubectl wait."""
        async def _communicate():
            await asyncio.sleep(60)

        process = MagicMock(returncode=None)
        process.communicate = _communicate
        process.wait = AsyncMock(return_value=-9)

        with patch("asyncio.create_subprocess_exec", new_callable=AsyncMock, return_value=process):
            with pytest.raises(TimeoutError):
                async with asyncio.timeout(0.05):
                    await ConditionWaiter(None, 60).wait_all([WaitCondition("pod", "condition=Ready")])

        process.kill.assert_called_once()
        process.wait.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unexpected_errors_reported_after_siblings(self):
        """Test undecodable output and exec errors become WaitError once every waiter is done."""
        finished = []

        async def _exec(*cmd, **kwargs):
            resource = cmd[cmd.index("wait") + 3]
            if resource == "pod/garbled":
                return _process(1, b"\xff\xfe timed out")
            if resource == "pod/denied":
                raise PermissionError("Permission denied: 'kubectl'")

            async def _communicate():
                await asyncio.sleep(0.05)
                finished.append(resource)
                return b"", b""

            process = MagicMock()
            process.returncode = 0
            process.communicate = _communicate
            return process

        conditions = [
            WaitCondition("pod/garbled", "condition=Ready"),
            WaitCondition("pod/denied", "condition=Ready"),
            WaitCondition("pod/slow", "condition=Ready"),
        ]
        with patch("asyncio.create_subprocess_exec", side_effect=_exec):
            with pytest.raises(WaitError, match="failed: \ufffd\ufffd timed out"):
                await ConditionWaiter(None, 60).wait_all(conditions)

        assert finished == ["pod/slow"]

    @pytest.mark.asyncio
    async def test_unexpected_exception_wrapped(self):
        """Test a non-setup exception from a waiter surfaces as WaitError."""
        with patch.object(ConditionWaiter, "wait", side_effect=RuntimeError("boom")):
            with pytest.raises(WaitError, match="wait on 'pod' failed: boom") as exc_info:
                await ConditionWaiter(None, 60).wait_all([WaitCondition("pod", "condition=Ready")])

        assert isinstance(exc_info.value.__cause__, RuntimeError)
