"""
Shared fixtures for the bundlectl tests.

Every test gets a bundle laid out under its own temporary root, and
`bundlectl_util_run` is replaced by a recorder so no control script, pkill,
or chef-client is ever executed.
"""

import json
import os
from pathlib import Path

import pytest

import bundlectl


class FakeSupervisor:
	"""Stands in for `bundlectl_util_run`.

	Control script invocations answer with the exit code configured in
	`codes`, keyed by service name or by (service, sub-command).
	"""

	def __init__(self, ctl):
		self.ctl = ctl
		self.calls = []
		self.codes = {}
		self.default = 0

	def __call__(self, cmd, timeout=None, capture=False, env=None):
		self.calls.append(list(cmd))
		script = Path(cmd[0])
		if script.parent == self.ctl.base_path / "init":
			code = self.codes.get((script.name, cmd[1]), self.codes.get(script.name, 0))
			return code, "", ""
		return self.default, "", ""

	def control_calls(self):
		"""(service, sub-command) pairs sent to control scripts, in order."""
		init = self.ctl.base_path / "init"
		return [(Path(c[0]).name, c[1]) for c in self.calls if Path(c[0]).parent == init]

	def other_calls(self):
		init = self.ctl.base_path / "init"
		return [c for c in self.calls if Path(c[0]).parent != init]


@pytest.fixture(autouse=True)
def isolated_runtime(monkeypatch):
	"""Reset global flags and keep environment changes inside the test."""
	monkeypatch.setattr(bundlectl, "_verbose", False)
	monkeypatch.setattr(bundlectl, "_quiet", False)
	monkeypatch.setattr(bundlectl, "_no_color", True)
	monkeypatch.setenv("PATH", os.environ.get("PATH", ""))
	monkeypatch.setenv("SVDIR", "")


@pytest.fixture
def sleeps(monkeypatch):
	"""Record sleeps instead of waiting."""
	recorded = []
	monkeypatch.setattr(bundlectl.time, "sleep", recorded.append)
	return recorded


@pytest.fixture
def ctl(tmp_path):
	return bundlectl.bundlectl_ctl_create("bundle", root=tmp_path, exe_name="bundlectl")


@pytest.fixture
def supervisor(ctl, monkeypatch):
	fake = FakeSupervisor(ctl)
	monkeypatch.setattr(bundlectl, "bundlectl_util_run", fake)
	return fake


@pytest.fixture
def add_service(ctl):
	"""Create a service directory, optionally enabled and with a PID file."""

	def _add(name, enabled=True, pid=None):
		service_dir = ctl.sv_path / name
		service_dir.mkdir(parents=True, exist_ok=True)
		if enabled:
			ctl.service_path.mkdir(parents=True, exist_ok=True)
			(ctl.service_path / name).symlink_to(service_dir)
		if pid is not None:
			(service_dir / "supervise").mkdir(exist_ok=True)
			(service_dir / "supervise" / "pid").write_text(f"{pid}\n")
		return service_dir

	return _add


@pytest.fixture
def running_config(ctl):
	"""Write the running configuration JSON for the bundle."""

	def _write(data):
		ctl.etc_path.mkdir(parents=True, exist_ok=True)
		path = bundlectl.bundlectl_config_running_path(ctl)
		path.write_text(json.dumps(data))
		return path

	return _write
