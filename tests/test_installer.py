import asyncio
import json

import pytest

from launchkit import devicectl, installer, simctl
from launchkit.errors import LaunchTimeoutError, NotFoundError, ToolInvocationError, ToolTimeoutError
from launchkit.installer import Installer, InstallerState
from launchkit.models import DestinationKind, DeviceDestination, RunOptions, SimulatorDestination

SIM = SimulatorDestination(udid="SIM-1", name="iPhone 15", booted=True)
DEVICE = DeviceDestination(udid="DEV-1", name="Test iPhone", paired=True)


class FakeSimctl:
    def __init__(self, install_failures=(), launch_output="com.example.Demo: 4821\n"):
        self.install_failures = list(install_failures)
        self.launch_output = launch_output
        self.calls = []

    async def terminate(self, udid, bundle_id):
        self.calls.append(("terminate", udid, bundle_id))
        raise ToolInvocationError("not running", command=["simctl"], returncode=3, stderr="found nothing to terminate")

    async def install(self, udid, app_path, timeout=None):
        self.calls.append(("install", udid, app_path))
        if self.install_failures:
            raise self.install_failures.pop(0)

    async def shutdown(self, udid):
        self.calls.append(("shutdown", udid))

    async def boot(self, udid):
        self.calls.append(("boot", udid))

    async def wait_for_boot(self, udid, timeout):
        self.calls.append(("wait_for_boot", udid))

    async def launch(self, udid, bundle_id, args=None, env=None, wait_for_debugger=False):
        self.calls.append(("launch", udid, bundle_id, list(args or []), dict(env or {}), wait_for_debugger))
        return self.launch_output

    def names(self):
        return [c[0] for c in self.calls]


@pytest.fixture
def fake_simctl(monkeypatch, clock):
    fake = FakeSimctl()
    for name in ("terminate", "install", "shutdown", "boot", "wait_for_boot", "launch"):
        monkeypatch.setattr(simctl, name, getattr(fake, name))
    monkeypatch.setattr(installer, "_sleep", clock.sleep)
    return fake


def _timeout():
    return ToolTimeoutError(["xcrun", "simctl", "install"], 200)


def test_parse_simulator_pid():
    assert installer.parse_simulator_pid("com.example.App: 4821") == 4821
    assert installer.parse_simulator_pid("some warning\ncom.example.App: 77\n") == 77


def test_parse_simulator_pid_without_digits_fails():
    with pytest.raises(NotFoundError) as exc_info:
        installer.parse_simulator_pid("com.example.App: launching")
    assert "com.example.App: launching" in exc_info.value.output
    with pytest.raises(NotFoundError):
        installer.parse_simulator_pid("")


def test_parse_simulator_pid_rejects_zero():
    with pytest.raises(NotFoundError):
        installer.parse_simulator_pid("com.example.App: 0")


def test_parse_device_pid():
    payload = {"info": {"outcome": "success"}, "result": {"process": {"processIdentifier": 912}}}
    assert installer.parse_device_pid(payload) == 912


@pytest.mark.parametrize("payload", [{}, {"result": {}}, {"result": {"process": {"processIdentifier": "12"}}}])
def test_parse_device_pid_missing(payload):
    with pytest.raises(NotFoundError):
        installer.parse_device_pid(payload)


def test_parse_device_app_path():
    payload = {"result": {"process": {
        "processIdentifier": 912,
        "executable": "file:///private/var/containers/Bundle/Application/5045C7CE/Demo.app/Demo",
    }}}
    assert installer.parse_device_app_path(payload) == "/private/var/containers/Bundle/Application/5045C7CE/Demo.app"
    assert installer.parse_device_app_path({"result": {"process": {"processIdentifier": 912}}}) == ""


def test_child_env_prefixes():
    assert installer.child_env(DestinationKind.SIMULATOR, {"A": "1"}) == {"SIMCTL_CHILD_A": "1"}
    assert installer.child_env(DestinationKind.DEVICE, {"A": "1"}) == {"DEVICECTL_CHILD_A": "1"}


def test_simulator_launch_states(fake_simctl):
    inst = Installer(SIM, "com.example.Demo", "/out/Demo.app", RunOptions())

    result = asyncio.run(inst.run())

    assert result.pid == 4821
    assert result.bundle_id == "com.example.Demo"
    assert result.destination_id == "SIM-1"
    assert result.app_path == "/out/Demo.app"
    assert inst.states == [
        InstallerState.IDLE,
        InstallerState.TERMINATING,
        InstallerState.INSTALLING,
        InstallerState.LAUNCHING,
        InstallerState.LAUNCHED,
    ]
    assert fake_simctl.names() == ["terminate", "install", "launch"]


def test_launch_forwards_args_env_and_debug_flag(fake_simctl):
    options = RunOptions(args=["-verbose"], env={"LOG": "1"}, debug=True)
    asyncio.run(Installer(SIM, "com.example.Demo", "/out/Demo.app", options).run())

    launch = [c for c in fake_simctl.calls if c[0] == "launch"][0]
    assert launch[3] == ["-verbose"]
    assert launch[4] == {"SIMCTL_CHILD_LOG": "1"}
    assert launch[5] is True


def test_install_timeout_once_then_success(fake_simctl, clock):
    fake_simctl.install_failures = [_timeout()]
    inst = Installer(SIM, "com.example.Demo", "/out/Demo.app", RunOptions())

    result = asyncio.run(inst.run())

    assert result.pid == 4821
    assert inst.install_attempts == 2
    assert fake_simctl.names() == ["terminate", "install", "shutdown", "boot", "wait_for_boot", "install", "launch"]
    assert clock.sleeps == [3]
    assert inst.states == [
        InstallerState.IDLE,
        InstallerState.TERMINATING,
        InstallerState.INSTALLING,
        InstallerState.INSTALL_TIMED_OUT,
        InstallerState.RESTARTING_DESTINATION,
        InstallerState.INSTALLING,
        InstallerState.LAUNCHING,
        InstallerState.LAUNCHED,
    ]


def test_install_timeout_twice_is_fatal(fake_simctl):
    fake_simctl.install_failures = [_timeout(), _timeout()]
    inst = Installer(SIM, "com.example.Demo", "/out/Demo.app", RunOptions())

    with pytest.raises(LaunchTimeoutError) as exc_info:
        asyncio.run(inst.run())

    assert "2 attempt" in exc_info.value.message
    assert fake_simctl.names().count("install") == 2
    assert "launch" not in fake_simctl.names()
    assert inst.state == InstallerState.FAILED


def test_install_error_is_not_retried(fake_simctl):
    fake_simctl.install_failures = [
        ToolInvocationError("install failed", command=["simctl"], returncode=1, stderr="Invalid bundle"),
    ]
    inst = Installer(SIM, "com.example.Demo", "/out/Demo.app", RunOptions())

    with pytest.raises(ToolInvocationError) as exc_info:
        asyncio.run(inst.run())

    assert exc_info.value.output == "Invalid bundle"
    assert any("disk space" in step for step in exc_info.value.remediation)
    assert fake_simctl.names() == ["terminate", "install"]
    assert inst.states[-1] == InstallerState.FAILED


def test_unparseable_launch_output_fails(fake_simctl):
    fake_simctl.launch_output = "An error was encountered processing the command\n"
    inst = Installer(SIM, "com.example.Demo", "/out/Demo.app", RunOptions())

    with pytest.raises(NotFoundError):
        asyncio.run(inst.run())
    assert inst.states[-2:] == [InstallerState.LAUNCHING, InstallerState.FAILED]


class FakeDevicectl:
    def __init__(self, pid=912, install_error=None):
        self.pid = pid
        self.install_error = install_error
        self.calls = []

    async def terminate(self, udid, bundle_id):
        self.calls.append(("terminate",))

    async def install(self, udid, app_path, timeout=None):
        self.calls.append(("install", app_path))
        if self.install_error:
            raise self.install_error

    async def launch(self, udid, bundle_id, json_output, args=None, env=None, start_stopped=False):
        self.calls.append(("launch", json_output, dict(env or {}), start_stopped))
        with open(json_output, "w") as f:
            json.dump({"result": {"process": {
                "processIdentifier": self.pid,
                "executable": "file:///private/var/containers/Bundle/Application/AB12/Demo.app/Demo",
            }}}, f)


@pytest.fixture
def fake_devicectl(monkeypatch):
    fake = FakeDevicectl()
    for name in ("terminate", "install", "launch"):
        monkeypatch.setattr(devicectl, name, getattr(fake, name))
    return fake


def test_device_launch_reads_json_record(fake_devicectl):
    options = RunOptions(env={"LOG": "1"}, debug=True)
    inst = Installer(DEVICE, "com.example.Demo", "/out/Demo.ipa", options)

    result = asyncio.run(inst.run())

    assert result.pid == 912
    assert result.remote_app_path == "/private/var/containers/Bundle/Application/AB12/Demo.app"
    _, json_output, env, start_stopped = fake_devicectl.calls[-1]
    assert env == {"DEVICECTL_CHILD_LOG": "1"}
    assert start_stopped is True
    assert json_output.endswith(".json")


def test_device_install_timeout_is_not_retried(fake_devicectl):
    fake_devicectl.install_error = _timeout()
    inst = Installer(DEVICE, "com.example.Demo", "/out/Demo.ipa", RunOptions())

    with pytest.raises(LaunchTimeoutError):
        asyncio.run(inst.run())

    assert [c[0] for c in fake_devicectl.calls] == ["terminate", "install"]
    assert InstallerState.RESTARTING_DESTINATION not in inst.states
