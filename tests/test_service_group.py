import pytest

import bundlectl
from bundlectl import CommandResult, bundlectl_run, bundlectl_sv_run


@pytest.fixture
def services(add_service):
	for name in ("nginx", "postgresql", "redis"):
		add_service(name)


def test_fan_out_sums_statuses(ctl, supervisor, services):
	supervisor.codes = {"nginx": 0, "postgresql": 1, "redis": 2}

	result = bundlectl_sv_run(ctl, "restart")

	assert result == CommandResult(3, force_exit=True)
	assert supervisor.control_calls() == [
		("nginx", "restart"),
		("postgresql", "restart"),
		("redis", "restart"),
	]


def test_dispatch_through_registry(ctl, supervisor, services):
	supervisor.codes = {("redis", "stop"): 1}
	assert bundlectl_run(ctl, ["stop"]) == CommandResult(1, force_exit=True)
	assert bundlectl_run(ctl, ["start", "redis"]).code == 0
	assert supervisor.control_calls()[-1] == ("redis", "start")


@pytest.mark.parametrize("command,signal_name", [("usr1", "1"), ("usr2", "2")])
def test_user_signals_are_translated(ctl, supervisor, services, command, signal_name):
	bundlectl_run(ctl, [command, "nginx"])
	assert supervisor.control_calls() == [("nginx", signal_name)]


def test_disabled_services_are_skipped(ctl, supervisor, add_service):
	add_service("nginx")
	add_service("redis", enabled=False)
	assert bundlectl_sv_run(ctl, "restart").code == 0
	assert supervisor.control_calls() == [("nginx", "restart")]


def test_disabled_service_reported_in_verbose_status(ctl, supervisor, add_service, capsys, monkeypatch):
	monkeypatch.setattr(bundlectl, "_verbose", True)
	add_service("redis", enabled=False)
	bundlectl_sv_run(ctl, "status")
	assert "redis disabled" in capsys.readouterr().out


@pytest.mark.parametrize("config_key", ["bundle", None])
def test_removed_services_only_stop(ctl, supervisor, services, running_config, config_key):
	removed = {"removed_services": ["postgresql"]}
	running_config({config_key: removed} if config_key else removed)

	for sv_cmd in ("status", "start", "restart", "stop"):
		bundlectl_sv_run(ctl, sv_cmd)

	postgres = [c for c in supervisor.control_calls() if c[0] == "postgresql"]
	assert postgres == [("postgresql", "stop")]


def test_failover_service_only_answers_status(ctl, supervisor, services, add_service):
	add_service("keepalived")
	bundlectl_sv_run(ctl, "stop")
	bundlectl_sv_run(ctl, "status")
	keepalived = [c for c in supervisor.control_calls() if c[0] == "keepalived"]
	assert keepalived == [("keepalived", "status")]


def test_hidden_services_excluded_from_status(ctl, supervisor, services, running_config):
	running_config({"bundle": {"hidden_services": ["redis"]}})
	bundlectl_sv_run(ctl, "status")
	bundlectl_sv_run(ctl, "restart")
	calls = supervisor.control_calls()
	assert ("redis", "status") not in calls
	assert ("redis", "restart") in calls


def test_named_service_bypasses_filters(ctl, supervisor, services, running_config):
	running_config({"bundle": {"hidden_services": ["redis"], "removed_services": ["nginx"]}})
	bundlectl_sv_run(ctl, "status", "redis")
	bundlectl_sv_run(ctl, "start", "nginx")
	assert supervisor.control_calls() == [("redis", "status"), ("nginx", "start")]


def test_unknown_named_service_is_a_no_op(ctl, supervisor, services):
	assert bundlectl_sv_run(ctl, "start", "missing").code == 0
	assert supervisor.control_calls() == []


def test_service_list_marks_enabled(ctl, supervisor, add_service, capsys):
	add_service("redis")
	add_service("nginx", enabled=False)
	assert bundlectl_run(ctl, ["service-list"]).code == 0
	assert capsys.readouterr().out.splitlines() == ["nginx", "redis*"]
