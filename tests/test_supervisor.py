"""Unit tests for the deploy supervisor."""

import json
import subprocess
import sys
import threading
import time
from pathlib import Path
from unittest.mock import patch

import pytest
from deploywatch.config import CONFIG_FILENAME, DeployConfig, MonitorConfig, SupervisorConfig
from deploywatch.events import EventType, FileEvent
from deploywatch.monitor import DirectoryMonitor
from deploywatch.supervisor import DeployError, DeploySupervisor, SupervisorError

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signal semantics")

SLEEPER = """\
import pathlib, sys, time
pathlib.Path(sys.argv[1]).write_text("ready")
time.sleep(60)
"""

STUBBORN = """\
import pathlib, signal, sys, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
pathlib.Path(sys.argv[1]).write_text("ready")
time.sleep(60)
"""

QUICK = """\
import sys
sys.exit(int(sys.argv[1]) if len(sys.argv) > 1 else 0)
"""

ENV_DUMP = """\
import json, os, sys
keys = ["MODE", "DISPLAY", "XAUTHORITY", "PATH"]
with open(sys.argv[1], "w") as fh:
    json.dump({key: os.environ.get(key) for key in keys}, fh)
"""


def _wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def share(tmp_path):
    """Create a watched root with a source subtree of child scripts."""
    root = tmp_path / "share"
    src = root / "src"
    (src / "lib").mkdir(parents=True)
    (src / "sleeper.py").write_text(SLEEPER)
    (src / "stubborn.py").write_text(STUBBORN)
    (src / "quick.py").write_text(QUICK)
    (src / "env_dump.py").write_text(ENV_DUMP)
    (src / "lib" / "data.txt").write_text("payload")
    return root


@pytest.fixture
def deploy_dir(tmp_path):
    return tmp_path / "deploy"


def _write_deploy_json(root: Path, deploy_dir: Path, args, **extra) -> None:
    payload = {
        "deploy_location": str(deploy_dir),
        "executable": sys.executable,
        "args": list(args),
        "source_location": "src",
    }
    payload.update(extra)
    (root / CONFIG_FILENAME).write_text(json.dumps(payload))


@pytest.fixture
def make_supervisor(share, deploy_dir):
    """Build supervisors from deploy.json and kill whatever they started."""
    created = []

    def _make(args, grace_period=2.0, **extra):
        _write_deploy_json(share, deploy_dir, args, **extra)
        settings = SupervisorConfig(grace_period=grace_period, settle_delay=0.0, display=":7", xauthority="/tmp/xauth")
        supervisor = DeploySupervisor(share, settings)
        created.append(supervisor)
        return supervisor

    yield _make
    for supervisor in created:
        supervisor.kill()


class TestEventClassification:
    """Test cases for DeploySupervisor.handle."""

    @pytest.fixture
    def supervisor(self, tmp_path):
        config = DeployConfig(deploy_location=tmp_path / "out", executable="run", source_location="src")
        return DeploySupervisor(tmp_path, SupervisorConfig(settle_delay=0.0), config=config)

    @pytest.mark.parametrize(
        "rel_path, expected",
        [
            ("src/main.py", True),
            ("src/pkg/mod.py", True),
            ("src", True),
            ("src2/main.py", False),
            ("docs/readme.md", False),
            ("deploy.json.bak", False),
        ],
    )
    def test_is_source_file(self, supervisor, rel_path, expected):
        """Only paths inside the source subtree are deployment relevant."""
        assert supervisor.is_source_file(rel_path) is expected

    def test_empty_source_location_matches_everything(self, tmp_path):
        """An empty source location means the whole watched tree."""
        config = DeployConfig(deploy_location=tmp_path / "out", executable="run", source_location="./")
        supervisor = DeploySupervisor(tmp_path, config=config)

        assert supervisor.is_source_file("anything/at/all.txt")

    def test_source_change_redeploys(self, supervisor):
        """Created, modified and deleted source files all trigger a redeploy."""
        with patch.object(supervisor, "redeploy") as redeploy:
            supervisor.handle(FileEvent(EventType.CREATED, "src/a.py"))
            supervisor.handle(FileEvent(EventType.DELETED, "src/b.py"))

        assert redeploy.call_count == 2

    def test_irrelevant_change_ignored(self, supervisor):
        """Files outside the source subtree do nothing."""
        with patch.object(supervisor, "redeploy") as redeploy:
            supervisor.handle(FileEvent(EventType.MODIFIED, "notes.txt"))

        redeploy.assert_not_called()

    def test_config_change_reloads_then_redeploys(self, supervisor):
        """A config change reloads and redeploys even when the reload fails."""
        with patch.object(supervisor, "redeploy") as redeploy:
            previous = supervisor.config
            supervisor.handle(FileEvent(EventType.MODIFIED, CONFIG_FILENAME))

        assert supervisor.config is previous
        redeploy.assert_called_once_with()

    def test_redeploy_failure_is_logged_not_raised(self, supervisor, caplog):
        """A failing redeploy does not escape the subscriber."""
        with patch.object(supervisor, "redeploy", side_effect=DeployError("copy failed")):
            supervisor.handle(FileEvent(EventType.MODIFIED, "src/a.py"))

        assert "Redeploy failed: copy failed" in caplog.text

    def test_undecodable_config_keeps_watch_loop_alive(self, supervisor, tmp_path):
        """A deploy.json that is not UTF-8 keeps the previous config and redeploys."""
        monitor = DirectoryMonitor(MonitorConfig(root_path=tmp_path))
        monitor.bus.subscribe(supervisor.handle)
        monitor.scan_once()
        previous = supervisor.config
        (tmp_path / CONFIG_FILENAME).write_text(
            json.dumps({"deploy_location": "/opt/other", "executable": "other"}), encoding="utf-16"
        )

        with patch.object(supervisor, "redeploy") as redeploy:
            events = monitor.scan_once()

        assert [(e.event_type, e.rel_path) for e in events] == [(EventType.CREATED, CONFIG_FILENAME)]
        assert supervisor.config is previous
        redeploy.assert_called_once_with()


class TestEnvironment:
    """Test cases for the child environment."""

    def test_build_environment(self, tmp_path, monkeypatch):
        """Inherited variables, configured entries and display variables are merged."""
        monkeypatch.setenv("INHERITED", "yes")
        monkeypatch.setenv("USER", "kiosk")
        config = DeployConfig(
            deploy_location=tmp_path,
            executable="run",
            env_variables=["MODE=prod", "URL=http://x/?a=b", "BROKEN"],
        )
        supervisor = DeploySupervisor(tmp_path, SupervisorConfig(), config=config)

        env = supervisor.build_environment()

        assert env["INHERITED"] == "yes"
        assert env["MODE"] == "prod"
        assert env["URL"] == "http://x/?a=b"
        assert "BROKEN" not in env
        assert env["DISPLAY"] == ":0"
        assert env["XAUTHORITY"] == "/home/kiosk/.Xauthority"


class TestLifecycle:
    """Test cases for deploy, kill and redeploy with real child processes."""

    def test_kill_when_idle_is_noop(self, tmp_path):
        """Killing with no process succeeds and changes nothing."""
        config = DeployConfig(deploy_location=tmp_path, executable="run")
        supervisor = DeploySupervisor(tmp_path, config=config)

        supervisor.kill()

        assert supervisor.process is None
        assert not supervisor.is_running()

    def test_deploy_copies_and_starts(self, make_supervisor, deploy_dir):
        """The source subtree is mirrored and the child runs inside it."""
        supervisor = make_supervisor(["sleeper.py", "marker"])
        (deploy_dir / "lib").mkdir(parents=True)
        (deploy_dir / "lib" / "data.txt").write_text("stale")
        (deploy_dir / "leftover.txt").write_text("keep me")

        supervisor.deploy()

        assert supervisor.is_running()
        assert _wait_for((deploy_dir / "marker").exists)
        assert (deploy_dir / "sleeper.py").read_text() == SLEEPER
        assert (deploy_dir / "lib" / "data.txt").read_text() == "payload"
        assert (deploy_dir / "leftover.txt").exists()

    def test_deploy_passes_environment(self, make_supervisor, deploy_dir):
        """The child sees configured and display variables."""
        supervisor = make_supervisor(["env_dump.py", "env.json"], env_variables=["MODE=kiosk"])

        supervisor.deploy()

        assert _wait_for(lambda: not supervisor.is_running())
        env = json.loads((deploy_dir / "env.json").read_text())
        assert env["MODE"] == "kiosk"
        assert env["DISPLAY"] == ":7"
        assert env["XAUTHORITY"] == "/tmp/xauth"
        assert env["PATH"]

    def test_kill_graceful(self, make_supervisor, deploy_dir):
        """A cooperative child exits on SIGTERM and state is cleared."""
        supervisor = make_supervisor(["sleeper.py", "marker"])
        supervisor.deploy()
        process = supervisor.process
        assert _wait_for((deploy_dir / "marker").exists)

        started = time.monotonic()
        supervisor.kill()

        assert time.monotonic() - started < 2.0
        assert process.poll() is not None
        assert supervisor.process is None
        assert not supervisor.is_running()

    def test_kill_escalates_after_grace_period(self, make_supervisor, deploy_dir):
        """A child ignoring SIGTERM is force killed after the grace period."""
        supervisor = make_supervisor(["stubborn.py", "marker"], grace_period=0.5)
        supervisor.deploy()
        process = supervisor.process
        assert _wait_for((deploy_dir / "marker").exists)

        started = time.monotonic()
        supervisor.kill()
        elapsed = time.monotonic() - started

        assert elapsed >= 0.5
        assert process.poll() is not None
        assert process.returncode < 0
        assert supervisor.process is None
        assert not supervisor.is_running()

    def test_exit_watcher_clears_running(self, make_supervisor):
        """A child that exits on its own flips running back to False."""
        supervisor = make_supervisor(["quick.py", "3"])

        supervisor.deploy()

        assert _wait_for(lambda: not supervisor.is_running())
        assert supervisor.process is not None
        assert supervisor.process.returncode == 3

    def test_deploy_refuses_second_live_process(self, make_supervisor, deploy_dir):
        """Only redeploy may replace a running process."""
        supervisor = make_supervisor(["sleeper.py", "marker"])
        supervisor.deploy()

        with pytest.raises(SupervisorError):
            supervisor.deploy()

    def test_redeploy_replaces_process(self, make_supervisor, deploy_dir):
        """After redeploy the previous handle is dead and no longer current."""
        supervisor = make_supervisor(["sleeper.py", "marker"])
        supervisor.deploy()
        first = supervisor.process
        assert _wait_for((deploy_dir / "marker").exists)

        supervisor.redeploy()

        second = supervisor.process
        assert second is not None
        assert second is not first
        assert first.poll() is not None
        assert supervisor.is_running()

    def test_config_change_restarts_with_new_args(self, make_supervisor, share, deploy_dir):
        """Changing deploy.json reloads it and restarts with the new command."""
        supervisor = make_supervisor(["sleeper.py", "first"])
        supervisor.deploy()
        first = supervisor.process
        assert _wait_for((deploy_dir / "first").exists)

        _write_deploy_json(share, deploy_dir, ["sleeper.py", "second"])
        supervisor.handle(FileEvent(EventType.MODIFIED, CONFIG_FILENAME))

        assert supervisor.config.args == ["sleeper.py", "second"]
        assert first.poll() is not None
        assert supervisor.process is not first
        assert _wait_for((deploy_dir / "second").exists)

    def test_copy_failure_starts_nothing(self, make_supervisor):
        """A missing source subtree aborts the deploy."""
        supervisor = make_supervisor(["sleeper.py", "marker"], source_location="missing")

        with pytest.raises(DeployError, match="failed to copy source"):
            supervisor.deploy()

        assert supervisor.process is None
        assert not supervisor.is_running()

    def test_start_failure_reported(self, make_supervisor, tmp_path):
        """An executable that cannot be started leaves the supervisor idle."""
        supervisor = make_supervisor([], executable=str(tmp_path / "no-such-binary"))

        with pytest.raises(DeployError, match="failed to start executable"):
            supervisor.deploy()

        assert supervisor.process is None
        assert not supervisor.is_running()

    def test_null_byte_in_environment_is_a_start_failure(self, make_supervisor):
        """Values the OS cannot pass to a child are reported, not raised through the bus."""
        supervisor = make_supervisor(["sleeper.py", "marker"], env_variables=["A=b\u0000c"])

        with pytest.raises(DeployError, match="failed to start executable"):
            supervisor.deploy()

        supervisor.handle(FileEvent(EventType.MODIFIED, "src/sleeper.py"))

        assert supervisor.process is None
        assert not supervisor.is_running()

    def test_concurrent_redeploys_leave_one_process(self, make_supervisor):
        """Overlapping redeploy requests are serialized into one live child."""
        supervisor = make_supervisor(["sleeper.py", "marker"])
        spawned = []
        real_popen = subprocess.Popen

        def _spawn(*args, **kwargs):
            process = real_popen(*args, **kwargs)
            spawned.append(process)
            return process

        with patch("deploywatch.supervisor.subprocess.Popen", side_effect=_spawn):
            supervisor.deploy()
            workers = [threading.Thread(target=supervisor.redeploy) for _ in range(2)]
            for worker in workers:
                worker.start()
            for worker in workers:
                worker.join(timeout=30)

        assert not any(worker.is_alive() for worker in workers)
        assert len(spawned) == 3
        alive = [process for process in spawned if process.poll() is None]
        assert alive == [supervisor.process]
        assert all(process.returncode is not None for process in spawned if process is not supervisor.process)
        assert supervisor.is_running()
