from pathlib import Path
import sys
import pytest

# Ensure repository root is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep tests away from the host's site file, log file and kernel."""

    monkeypatch.delenv("VIRTUAL_SUBNET_EXEC", raising=False)
    monkeypatch.delenv("VIRTUAL_SUBNET_LOG_EVENTS", raising=False)
    monkeypatch.setenv("VIRTUAL_SUBNET_LOG_FILE", str(tmp_path / "actions.log"))
    monkeypatch.setenv("VIRTUAL_SUBNET_CONFIG", str(tmp_path / "missing-site.json"))


@pytest.fixture
def net_path(tmp_path: Path) -> Path:
    """Return a fake ``/sys/class/net`` with ``lo``, ``enp3s0`` and ``tailscale0``."""

    netdir = tmp_path / "sys/class/net"
    for name in ("lo", "enp3s0", "tailscale0"):
        (netdir / name).mkdir(parents=True)
    return netdir
