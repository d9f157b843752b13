"""Unit tests for the kind cluster backend."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from kubernetes.config.config_exception import ConfigException

from e2e_setup.config import Backend, ExposePort, KindSpec, Step
from e2e_setup.environment.kind import (
    ClusterProvisioner,
    KindCli,
    cluster_name,
    connect_cluster,
)
from e2e_setup.errors import ConfigurationError, ProvisioningError


@pytest.fixture
def kind_cli():
    return MagicMock(spec=KindCli)


@pytest.mark.cli_unit
class TestClusterName:
    """Tests for cluster_name."""

    def test_from_config(self, kind_file):
        """Test reading the cluster name from the kind config."""
        assert cluster_name(kind_file) == "e2e-test"

    def test_unnamed(self, tmp_path):
        """Test a kind config without a name."""
        path = tmp_path / "kind.yaml"
        path.write_text("kind: Cluster\n")
        assert cluster_name(path) is None

    def test_missing(self, tmp_path):
        """Test a missing kind config."""
        assert cluster_name(tmp_path / "nope.yaml") is None


@pytest.mark.cli_unit
class TestKindCli:
    """Tests for KindCli."""

    def test_create_cluster(self):
        """Test the kind create command."""
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stderr="")
            KindCli(Path("/tmp/kc")).create_cluster(Path("/w/kind.yaml"))

        assert mock_run.call_args.args[0] == [
            "kind",
            "create",
            "cluster",
            "--config",
            "/w/kind.yaml",
            "--kubeconfig",
            "/tmp/kc",
        ]

    def test_load_image_with_name(self):
        """Test loading an image into a named cluster."""
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stderr="")
            KindCli(Path("/tmp/kc")).load_image("foo:latest", "e2e-test")

        assert mock_run.call_args.args[0] == [
            "kind",
            "load",
            "docker-image",
            "foo:latest",
            "--name",
            "e2e-test",
        ]

    def test_delete_cluster(self):
        """Test the kind delete command."""
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=0, stderr="")
            KindCli(Path("/tmp/kc")).delete_cluster()

        assert mock_run.call_args.args[0] == ["kind", "delete", "cluster", "--kubeconfig", "/tmp/kc"]

    def test_failure_keeps_stderr(self):
        """Test kind stderr is kept in the error."""
        with patch("subprocess.run") as mock_run:
            mock_run.return_value = MagicMock(returncode=1, stderr="ERROR: node(s) already exist")
            with pytest.raises(ProvisioningError, match="node\\(s\\) already exist"):
                KindCli(Path("/tmp/kc")).create_cluster(Path("/w/kind.yaml"))

    def test_kind_missing(self):
        """Test a missing kind binary."""
        with patch("subprocess.run", side_effect=FileNotFoundError):
            with pytest.raises(ProvisioningError, match="kind not found"):
                KindCli(Path("/tmp/kc")).delete_cluster()


@pytest.mark.cli_unit
class TestConnectCluster:
    """Tests for connect_cluster."""

    def test_connect(self):
        """Test connecting clients from a kubeconfig."""
        with patch("kubernetes.config.new_client_from_config") as mock_new:
            handle = connect_cluster(Path("/tmp/kc"))

        mock_new.assert_called_once_with(config_file="/tmp/kc")
        assert handle.api_client is mock_new.return_value
        assert handle.kubeconfig == Path("/tmp/kc")

    def test_bad_config(self):
        """Test an unreadable kubeconfig."""
        with patch("kubernetes.config.new_client_from_config", side_effect=ConfigException("bad")):
            with pytest.raises(ProvisioningError, match="connect to k8s cluster failed"):
                connect_cluster(Path("/tmp/kc"))


@pytest.mark.cli_unit
class TestClusterProvisioner:
    """Tests for ClusterProvisioner."""

    @pytest.mark.asyncio
    async def test_no_steps_creates_nothing(self, make_spec, broker, kind_cli, environ):
        """Test a kind block without steps creates no cluster."""
        spec = make_spec(backend=Backend.CLUSTER, file=Path("/does/not/matter.yaml"), steps=None)
        steps_runner = AsyncMock()
        connect = MagicMock()

        result = await ClusterProvisioner(
            spec, broker, steps_runner=steps_runner, kind=kind_cli, connect=connect
        ).setup()

        assert result.cluster is None
        assert result.forward is None
        kind_cli.create_cluster.assert_not_called()
        connect.assert_not_called()
        steps_runner.assert_not_called()
        assert environ == {}

    @pytest.mark.asyncio
    async def test_missing_config_file(self, make_spec, broker, kind_cli, tmp_path):
        """Test a missing kind config file fails setup."""
        spec = make_spec(backend=Backend.CLUSTER, file=tmp_path / "nope.yaml", steps=())

        with pytest.raises(ConfigurationError, match="kind config file not found"):
            await ClusterProvisioner(spec, broker, kind=kind_cli).setup()
        kind_cli.create_cluster.assert_not_called()

    @pytest.mark.asyncio
    async def test_setup(self, make_spec, broker, kind_cli, kind_file, tmp_path, environ, monkeypatch):
        """Test cluster creation, image loading and steps."""
        monkeypatch.setenv("E2E_TAG", "v1")
        profile = tmp_path / "env"
        profile.write_text("REGION=eu\n")
        kubeconfig = tmp_path / "kc"
        steps = (Step(name="install", command="true"),)
        spec = make_spec(
            backend=Backend.CLUSTER,
            file=kind_file,
            steps=steps,
            kind=KindSpec(import_images=("app:$E2E_TAG",)),
            init_system_environment=profile,
            kubeconfig=kubeconfig,
        )
        steps_runner = AsyncMock()
        cluster = MagicMock()
        connect = MagicMock(return_value=cluster)

        result = await ClusterProvisioner(
            spec, broker, steps_runner=steps_runner, kind=kind_cli, connect=connect
        ).setup()

        kind_cli.create_cluster.assert_called_once_with(kind_file)
        kind_cli.load_image.assert_called_once_with("app:v1", "e2e-test")
        connect.assert_called_once_with(kubeconfig)
        steps_runner.assert_awaited_once_with(steps, spec.timeout, cluster)
        assert environ == {"REGION": "eu", "KUBECONFIG": str(kubeconfig)}
        assert result.cluster is cluster
        assert result.forward is None

    @pytest.mark.asyncio
    async def test_exposes_ports(self, make_spec, broker, kind_cli, kind_file, tmp_path):
        """Test declared ports are forwarded after the steps."""
        exposes = (ExposePort(resource="service/foo", port="8080"),)
        spec = make_spec(
            backend=Backend.CLUSTER,
            file=kind_file,
            steps=(),
            kind=KindSpec(expose_ports=exposes),
            kubeconfig=tmp_path / "kc",
        )
        cluster = MagicMock()
        context = MagicMock()

        with patch("e2e_setup.environment.kind.PortForwardSupervisor") as mock_supervisor:
            mock_supervisor.return_value.expose = AsyncMock(return_value=context)
            result = await ClusterProvisioner(
                spec, broker, steps_runner=AsyncMock(), kind=kind_cli, connect=MagicMock(return_value=cluster)
            ).setup()

        mock_supervisor.assert_called_once_with(cluster, broker, spec.timeout)
        mock_supervisor.return_value.expose.assert_awaited_once_with(exposes)
        assert result.forward is context

    @pytest.mark.asyncio
    async def test_create_failure_stops_setup(self, make_spec, broker, kind_cli, kind_file, tmp_path):
        """Test a failed cluster creation stops setup."""
        kind_cli.create_cluster.side_effect = ProvisioningError(message="creating kind cluster failed")
        spec = make_spec(backend=Backend.CLUSTER, file=kind_file, steps=(), kubeconfig=tmp_path / "kc")
        connect = MagicMock()

        with pytest.raises(ProvisioningError):
            await ClusterProvisioner(spec, broker, kind=kind_cli, connect=connect).setup()
        connect.assert_not_called()

    def test_teardown(self, make_spec, broker, kind_cli, kind_file):
        """Test teardown deletes the named cluster."""
        spec = make_spec(backend=Backend.CLUSTER, file=kind_file)
        ClusterProvisioner(spec, broker, kind=kind_cli).teardown()
        kind_cli.delete_cluster.assert_called_once_with("e2e-test")
