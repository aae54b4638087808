import pytest

import bundlectl
from bundlectl import (
	EXTERNAL_CLEANSE,
	EXTERNAL_STATUS,
	MissingHandlerError,
	bundlectl_hooks_add_external,
	bundlectl_run,
)

EXTERNALS = {
	"bundle": {
		"postgresql": {"external": True, "vip": "db.example.com"},
		"opensearch": {"external": True, "vip": "search.example.com"},
		"redis": {"enable": True},
	}
}


@pytest.fixture
def externals(running_config):
	running_config(EXTERNALS)


@pytest.fixture
def status_overrides(ctl):
	calls = []

	def make(name):
		def report(ctl, detail):
			calls.append((name, detail))
			return f"{name}: remote ({detail})"

		return report

	for name in ("postgresql", "opensearch"):
		bundlectl_hooks_add_external(ctl, EXTERNAL_STATUS, name, make(name))
	return calls


def test_status_summary_reports_external_services(
	ctl, supervisor, add_service, externals, status_overrides, capsys
):
	add_service("redis")

	result = bundlectl_run(ctl, ["status"])

	assert result.code == 0
	assert supervisor.control_calls() == [("redis", "status")]
	assert sorted(status_overrides) == [("opensearch", "sparse"), ("postgresql", "sparse")]
	lines = capsys.readouterr().out.splitlines()
	assert lines.index(" Internal Services ") < lines.index(" External Services ")
	assert "postgresql: remote (sparse)" in lines
	assert "opensearch: remote (sparse)" in lines


def test_status_of_named_external_service_is_verbose(
	ctl, supervisor, externals, status_overrides, capsys
):
	result = bundlectl_run(ctl, ["status", "postgresql"])

	assert result.code == 0
	assert supervisor.control_calls() == []
	assert status_overrides == [("postgresql", "verbose")]
	out = capsys.readouterr().out
	assert "postgresql: remote (verbose)" in out
	assert "Internal Services" not in out


def test_status_of_named_local_service_skips_overrides(
	ctl, supervisor, add_service, externals, status_overrides
):
	add_service("redis")
	bundlectl_run(ctl, ["status", "redis"])
	assert status_overrides == []
	assert supervisor.control_calls() == [("redis", "status")]


def test_missing_status_override_is_reported(ctl, supervisor, externals):
	with pytest.raises(MissingHandlerError) as excinfo:
		bundlectl_run(ctl, ["status"])
	assert excinfo.value.event == EXTERNAL_STATUS
	assert isinstance(excinfo.value, LookupError)


def test_headers_suppressed_without_external_services(ctl, supervisor, add_service, capsys):
	add_service("redis")
	bundlectl_run(ctl, ["status"])
	bundlectl_run(ctl, ["service-list"])
	out = capsys.readouterr().out
	assert "Internal Services" not in out
	assert "External Services" not in out


def test_service_list_includes_external_endpoints(ctl, supervisor, add_service, externals, capsys):
	add_service("redis")
	add_service("nginx", enabled=False)

	result = bundlectl_run(ctl, ["service-list"])

	assert result.code == 0
	lines = capsys.readouterr().out.splitlines()
	assert "nginx" in lines
	assert "redis*" in lines
	assert " >  postgresql on db.example.com" in lines
	assert " >  opensearch on search.example.com" in lines
	assert lines.index("redis*") < lines.index(" External Services ")


@pytest.mark.parametrize("with_external", [False, True])
def test_cleanse_post_hook_delegates_to_overrides(ctl, externals, capsys, with_external):
	calls = []
	for name in ("postgresql", "opensearch"):
		bundlectl_hooks_add_external(
			ctl, EXTERNAL_CLEANSE, name,
			lambda ctl, perform, name=name: calls.append((name, perform)),
		)
	ctl.with_external = with_external

	bundlectl.bundlectl_external_cleanse_post_hook(ctl)

	assert sorted(calls) == [("opensearch", with_external), ("postgresql", with_external)]
	out = capsys.readouterr().out
	assert ("Deleting data from external service: postgresql" in out) is with_external


def test_missing_cleanse_override_is_reported(ctl, externals):
	with pytest.raises(MissingHandlerError) as excinfo:
		bundlectl.bundlectl_external_cleanse_post_hook(ctl)
	assert excinfo.value.event == EXTERNAL_CLEANSE


def test_external_error_names_endpoint(ctl, externals):
	message = bundlectl.bundlectl_external_error(ctl, "postgresql")
	assert "The service postgresql is running externally" in message
	assert "via bundlectl" in message
	assert "Please log into db.example.com" in message
