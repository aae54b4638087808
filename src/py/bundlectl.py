#!/usr/bin/env python3
# --
# File: bundlectl.py
#
# `bundlectl` is the operations control surface for a locally-installed,
# multi-service bundle supervised by runit. It fans lifecycle commands out
# across the supervised services, wraps every command in pre/post hooks,
# redirects commands aimed at externally hosted services, and provides the
# destructive `cleanse` and `uninstall` maintenance flows.
#
# ## Usage
#
# >   bundlectl COMMAND [SERVICE] [OPTIONS]
#
# ## Bundle Layout
#
# >   /opt/${NAME}/sv/${SERVICE}/               - Supervised service directory
# >   /opt/${NAME}/sv/${SERVICE}/supervise/pid  - PID of the supervised process
# >   /opt/${NAME}/service/${SERVICE}           - Symlink present when enabled
# >   /opt/${NAME}/init/${SERVICE}              - Per-service control script
# >   /etc/${NAME}/${NAME}-running.json         - Running configuration
#
# ## Extensions
#
# Every `*.py` file in the directories listed in `BUNDLECTL_EXTENSIONS` is
# loaded before dispatch. The module sees a global `ctl` and may define
# `register(ctl)`; either way it adds commands and hooks through the
# `bundlectl_command_*` and `bundlectl_hooks_*` functions.

import argparse
import dataclasses
import fnmatch
import glob
import importlib.util
import json
import os
import re
import shutil
import signal
import subprocess
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, TextIO

# -----------------------------------------------------------------------------
#
# CONFIGURATION
#
# -----------------------------------------------------------------------------

VERSION = "1.0.0"
BUNDLECTL_NAME = os.environ.get("BUNDLECTL_NAME", "bundle")
BUNDLECTL_DISPLAY_NAME = os.environ.get("BUNDLECTL_DISPLAY_NAME", "")
BUNDLECTL_PACKAGE = os.environ.get("BUNDLECTL_PACKAGE", "")
BUNDLECTL_ROOT = Path(os.environ.get("BUNDLECTL_ROOT", "/"))
BUNDLECTL_EXTENSIONS = os.environ.get("BUNDLECTL_EXTENSIONS", "")
BUNDLECTL_KILL_USERS = os.environ.get("BUNDLECTL_KILL_USERS", "")
BUNDLECTL_FAILOVER_SERVICE = os.environ.get("BUNDLECTL_FAILOVER_SERVICE", "keepalived")
BUNDLECTL_NO_COLOR = os.environ.get("BUNDLECTL_NO_COLOR", "") == "1"
BUNDLECTL_KILL_GRACE = int(os.environ.get("BUNDLECTL_KILL_GRACE", "3"))
BUNDLECTL_CLEANSE_WAIT = int(os.environ.get("BUNDLECTL_CLEANSE_WAIT", "60"))

# Sub-commands understood by the per-service runit control scripts
SV_COMMAND_NAMES = (
	"status",
	"up",
	"down",
	"once",
	"pause",
	"cont",
	"hup",
	"alarm",
	"int",
	"quit",
	"term",
	"kill",
	"start",
	"stop",
	"restart",
	"shutdown",
	"force-stop",
	"force-reload",
	"force-restart",
	"force-shutdown",
	"check",
	"usr1",
	"usr2",
)

ARITY_NO_ARG = 1
ARITY_OPTIONAL_ARG = 2

EXIT_UNKNOWN_COMMAND = 1
EXIT_UNEXPECTED_ARGUMENT = 2
EXIT_BLOCKED = 8

HOOK_PRE = "pre"
HOOK_POST = "post"
HOOK_GLOBAL_PRE = "global_pre"
EXTERNAL_STATUS = "external_status"
EXTERNAL_CLEANSE = "external_cleanse"

LOG_EXCLUDE = r"(config|lock|@|bz2|gz|gzip|tbz2|tgz|txz|xz|zip)"
LOG_PATH_EXCLUDE = ["*/sasl/*"]

# Global runtime state
_verbose = False
_quiet = False
_no_color = BUNDLECTL_NO_COLOR

# -----------------------------------------------------------------------------
#
# TYPES
#
# -----------------------------------------------------------------------------


class BundleCtlError(Exception):
	"""Base class for errors reported by bundlectl."""

	pass


class CommandError(BundleCtlError):
	"""Raised when a command cannot be registered."""

	pass


class MissingHandlerError(BundleCtlError, LookupError):
	"""Raised when an external service has no override handler for an event."""

	def __init__(self, event: str, service: str):
		super().__init__(
			f"No {event} handler registered for external service '{service}'"
		)
		self.event = event
		self.service = service


class CommandAborted(BundleCtlError):
	"""Raised by a handler to abandon the whole invocation.

	The post-hook is skipped and the process exits with `code`.
	"""

	def __init__(self, code: int = 0):
		super().__init__(f"Command aborted with exit code {code}")
		self.code = code


Handler = Callable[..., Any]


@dataclasses.dataclass(frozen=True)
class CommandSpec:
	"""A registered command."""

	name: str
	description: str
	arity: int  # ARITY_NO_ARG or ARITY_OPTIONAL_ARG
	handler: Handler


@dataclasses.dataclass
class CommandResult:
	"""Outcome of a dispatched command.

	`force_exit` marks a terminal-exit request: the command asked for the
	process to end with `code` once its post-hook has run.
	"""

	code: int = 0
	force_exit: bool = False


@dataclasses.dataclass
class CommandRegistry:
	"""Flat and categorized command tables plus the bound entry points."""

	commands: dict[str, CommandSpec] = dataclasses.field(default_factory=dict)
	categories: dict[str, dict[str, CommandSpec]] = dataclasses.field(
		default_factory=dict
	)
	# Normalized method identifier (hyphens as underscores) -> handler
	methods: dict[str, Handler] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class HookRegistry:
	"""Hook handlers keyed by (event, target)."""

	hooks: dict[tuple[str, str], Handler] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class Ctl:
	"""State of one bundlectl invocation."""

	name: str
	display_name: str
	package_name: str
	root: Path
	base_path: Path
	sv_path: Path
	service_path: Path
	etc_path: Path
	data_path: Path
	log_path: Path
	backup_root: Path
	exe_name: str = "bundlectl"
	merge_service_commands: bool = True
	kill_users: list[str] = dataclasses.field(default_factory=list)
	failover_service: str = BUNDLECTL_FAILOVER_SERVICE
	log_exclude: str = LOG_EXCLUDE
	log_path_exclude: list[str] = dataclasses.field(
		default_factory=lambda: list(LOG_PATH_EXCLUDE)
	)
	registry: CommandRegistry = dataclasses.field(default_factory=CommandRegistry)
	hooks: HookRegistry = dataclasses.field(default_factory=HookRegistry)
	output: Optional[TextIO] = None  # defaults to sys.stdout
	# Options from the command line
	with_external: bool = False
	accept_license: bool = False
	extra_args: list[str] = dataclasses.field(default_factory=list)
	# Filled in while running
	backup_dir: Optional[Path] = None
	running_config: Optional[dict] = None
	running_config_loaded: bool = False


# -----------------------------------------------------------------------------
#
# UTILITIES
#
# -----------------------------------------------------------------------------

# =============================================================================
# Logging
# =============================================================================


# Function: bundlectl_util_log LEVEL MESSAGE
# Log message respecting verbose/quiet settings.
def bundlectl_util_log(level: str, msg: str) -> None:
	"""Log message respecting verbose/quiet settings."""
	levels = {"debug": 0, "info": 1, "warn": 2, "error": 3}
	level_num = levels.get(level, 1)
	if _quiet and level_num < 2:
		return
	if level == "debug" and not _verbose:
		return
	prefix = {"debug": "DBG", "info": "---", "warn": "WRN", "error": "ERR"}.get(
		level, "---"
	)
	color = {"debug": "dim", "info": "", "warn": "yellow", "error": "red"}.get(
		level, ""
	)
	stream = sys.stderr if level == "error" else sys.stdout
	line = f"{prefix} {msg}"
	if color:
		line = bundlectl_util_color(line, color, stream)
	print(line, file=stream)


# Function: bundlectl_util_color TEXT COLOR
# Colorize text if colors enabled.
def bundlectl_util_color(text: str, color: str, stream: Optional[TextIO] = None) -> str:
	"""Colorize text if colors enabled and the stream is a terminal."""
	stream = stream or sys.stdout
	if _no_color or not stream.isatty():
		return text
	codes = {
		"red": "\033[31m",
		"green": "\033[32m",
		"yellow": "\033[33m",
		"dim": "\033[2m",
		"bold": "\033[1m",
		"reset": "\033[0m",
	}
	return f"{codes.get(color, '')}{text}{codes['reset']}"


# Function: bundlectl_ctl_out CTL MESSAGE
# Write an operator-facing report line.
def bundlectl_ctl_out(ctl: Ctl, msg: str) -> None:
	"""Write a report line to the invocation's output stream."""
	print(msg, file=ctl.output or sys.stdout)


# =============================================================================
# Subprocess
# =============================================================================


# Function: bundlectl_util_run CMD TIMEOUT CAPTURE
# Run command, return (code, stdout, stderr).
def bundlectl_util_run(
	cmd: list[str],
	timeout: Optional[int] = None,
	capture: bool = False,
	env: Optional[dict] = None,
) -> tuple[int, str, str]:
	"""Run command synchronously, return (code, stdout, stderr).

	There is no timeout unless one is given: a hung control script hangs
	the caller.
	"""
	bundlectl_util_log("debug", f"Running: {' '.join(cmd)}")
	try:
		result = subprocess.run(
			cmd,
			capture_output=capture,
			text=True,
			timeout=timeout,
			env=env if env else None,
		)
		return result.returncode, result.stdout or "", result.stderr or ""
	except subprocess.TimeoutExpired:
		return -1, "", "Command timed out"
	except FileNotFoundError:
		return 127, "", f"Command not found: {cmd[0]}"
	except PermissionError as e:
		return 126, "", str(e)


# =============================================================================
# Paths
# =============================================================================


def bundlectl_util_rooted(root: Path, path: str) -> Path:
	"""Return absolute `path` relocated under `root`."""
	return Path(root) / path.lstrip("/")


def bundlectl_util_method_name(name: str) -> str:
	"""Normalize a command or hook name into its method identifier."""
	return name.replace("-", "_")


# -----------------------------------------------------------------------------
#
# RUNNING CONFIGURATION
#
# -----------------------------------------------------------------------------


# Function: bundlectl_config_running_path CTL
# Path of the JSON snapshot written by the configuration run.
def bundlectl_config_running_path(ctl: Ctl) -> Path:
	"""Return path of the running configuration file."""
	return ctl.etc_path / f"{ctl.name}-running.json"


# Function: bundlectl_config_running CTL
# Load the running configuration, once per invocation.
def bundlectl_config_running(ctl: Ctl) -> Optional[dict]:
	"""Return the running configuration, or None when the file does not exist.

	A missing file means a fresh install: nothing is removed, hidden, or
	external.
	"""
	if not ctl.running_config_loaded:
		path = bundlectl_config_running_path(ctl)
		if path.exists():
			try:
				with open(path) as f:
					ctl.running_config = json.load(f)
			except (OSError, ValueError) as e:
				raise BundleCtlError(f"Failed to load {path}: {e}") from e
		ctl.running_config_loaded = True
	return ctl.running_config


# Function: bundlectl_config_package CTL
# The package section of the running configuration.
def bundlectl_config_package(ctl: Ctl) -> dict:
	"""Return running_config[package], or {} when absent."""
	running = bundlectl_config_running(ctl)
	if not isinstance(running, dict):
		return {}
	section = running.get(bundlectl_util_method_name(ctl.package_name))
	return section if isinstance(section, dict) else {}


def _bundlectl_config_service_names(ctl: Ctl, key: str) -> list[str]:
	"""Read a service name list from the package section, else the top level."""
	names = bundlectl_config_package(ctl).get(key)
	if names is None:
		running = bundlectl_config_running(ctl)
		names = running.get(key) if isinstance(running, dict) else None
	return list(names or [])


def bundlectl_config_removed_services(ctl: Ctl) -> list[str]:
	"""Services left behind by an upgrade; they only answer `stop`."""
	return _bundlectl_config_service_names(ctl, "removed_services")


def bundlectl_config_hidden_services(ctl: Ctl) -> list[str]:
	"""Services excluded from the `status` fan-out."""
	return _bundlectl_config_service_names(ctl, "hidden_services")


# Function: bundlectl_config_external_services CTL
# Settings of every service flagged `external: true`.
def bundlectl_config_external_services(ctl: Ctl) -> dict[str, dict]:
	"""Return {service: settings} for services hosted outside this machine."""
	return {
		name: settings
		for name, settings in bundlectl_config_package(ctl).items()
		if isinstance(settings, dict) and settings.get("external") is True
	}


def bundlectl_config_service_external(ctl: Ctl, service: Optional[str]) -> bool:
	"""Check if the named service is hosted externally."""
	if service is None:
		return False
	return service in bundlectl_config_external_services(ctl)


def bundlectl_config_service(ctl: Ctl, service: str) -> Optional[dict]:
	"""Return running_config[package][service], or None."""
	return bundlectl_config_package(ctl).get(service)


# -----------------------------------------------------------------------------
#
# SERVICES
#
# -----------------------------------------------------------------------------


# Function: bundlectl_service_list CTL
# List all supervised services, sorted by name.
def bundlectl_service_list(ctl: Ctl) -> list[str]:
	"""List every service directory under the supervision root."""
	if not ctl.sv_path.is_dir():
		return []
	return sorted(entry.name for entry in ctl.sv_path.iterdir())


# Function: bundlectl_service_enabled CTL SERVICE
# A service is enabled when its symlink exists in the active service root.
def bundlectl_service_enabled(ctl: Ctl, service: str) -> bool:
	return (ctl.service_path / service).is_symlink()


# Function: bundlectl_service_control CTL SERVICE SUBCOMMAND
# Invoke the service's control script and return its exit status.
def bundlectl_service_control(ctl: Ctl, service: str, sv_cmd: str) -> int:
	script = ctl.base_path / "init" / service
	code, _, _ = bundlectl_util_run([str(script), sv_cmd])
	return code


# -----------------------------------------------------------------------------
#
# COMMANDS
#
# -----------------------------------------------------------------------------


# Function: bundlectl_command_bind CTL NAME HANDLER
# Bind a handler to the command's method identifier.
def bundlectl_command_bind(ctl: Ctl, name: str, handler: Handler) -> None:
	ctl.registry.methods[bundlectl_util_method_name(name)] = handler


# Function: bundlectl_command_add CTL NAME DESCRIPTION ARITY HANDLER CATEGORY
# Register a command, replacing any previous registration of the name.
def bundlectl_command_add(
	ctl: Ctl,
	name: str,
	description: str,
	arity: int = ARITY_NO_ARG,
	handler: Optional[Handler] = None,
	category: Optional[str] = None,
) -> CommandSpec:
	"""Register a command in the flat table, or under `category` when given.

	Handlers are called as `handler(ctl, command, service)`. Without a
	handler the name must already be bound, which is how the unlisted
	supervisor sub-commands (`up`, `down`, ...) are exposed. A name lives in
	at most one category: registering it under a new category moves it.
	"""
	if arity not in (ARITY_NO_ARG, ARITY_OPTIONAL_ARG):
		raise CommandError(f"Invalid arity for command '{name}': {arity}")
	if handler is None:
		handler = ctl.registry.methods.get(bundlectl_util_method_name(name))
		if handler is None:
			raise CommandError(f"Command '{name}' has no handler")
	spec = CommandSpec(name, description, arity, handler)
	if category is None:
		ctl.registry.commands[name] = spec
	else:
		for other, commands in ctl.registry.categories.items():
			if other != category:
				commands.pop(name, None)
		ctl.registry.categories.setdefault(category, {})[name] = spec
	bundlectl_command_bind(ctl, name, handler)
	return spec


def bundlectl_command_add_category(
	ctl: Ctl,
	name: str,
	category: str,
	description: str,
	arity: int = ARITY_NO_ARG,
	handler: Optional[Handler] = None,
) -> CommandSpec:
	"""Register a command under a category, creating the category if needed."""
	return bundlectl_command_add(ctl, name, description, arity, handler, category)


# Function: bundlectl_command_lookup CTL NAME
# Find a command: flat table first, then the categories in order.
def bundlectl_command_lookup(ctl: Ctl, name: str) -> Optional[CommandSpec]:
	"""Return the CommandSpec for `name`, or None when not registered."""
	spec = ctl.registry.commands.get(name)
	if spec is not None:
		return spec
	for commands in ctl.registry.categories.values():
		if name in commands:
			return commands[name]
	return None


# Function: bundlectl_command_all CTL
# Merged view of all commands; categorized entries win over flat ones.
def bundlectl_command_all(ctl: Ctl) -> dict[str, CommandSpec]:
	merged = dict(ctl.registry.commands)
	for commands in ctl.registry.categories.values():
		merged.update(commands)
	return merged


def bundlectl_exit(code: int) -> CommandResult:
	"""Request process termination with `code` once the post-hook has run."""
	return CommandResult(code, force_exit=True)


def bundlectl_command_result(ret: Any) -> CommandResult:
	"""Normalize a handler return value into a CommandResult."""
	if isinstance(ret, CommandResult):
		return ret
	if ret is None:
		return CommandResult()
	return CommandResult(int(ret))


# -----------------------------------------------------------------------------
#
# HOOKS
#
# -----------------------------------------------------------------------------


# Function: bundlectl_hooks_add CTL EVENT TARGET HANDLER
# Register a hook, replacing any previous one for the same (event, target).
def bundlectl_hooks_add(ctl: Ctl, event: str, target: str, handler: Handler) -> None:
	ctl.hooks.hooks[(event, bundlectl_util_method_name(target))] = handler


def bundlectl_hooks_get(ctl: Ctl, event: str, target: str) -> Optional[Handler]:
	return ctl.hooks.hooks.get((event, bundlectl_util_method_name(target)))


def bundlectl_hooks_add_pre(ctl: Ctl, command: str, handler: Handler) -> None:
	"""Gate `command`: `handler(ctl, service)` returning false blocks it."""
	bundlectl_hooks_add(ctl, HOOK_PRE, command, handler)


def bundlectl_hooks_add_post(ctl: Ctl, command: str, handler: Handler) -> None:
	"""Run `handler(ctl, service)` after `command`; its return value is ignored."""
	bundlectl_hooks_add(ctl, HOOK_POST, command, handler)


def bundlectl_hooks_add_global_pre(ctl: Ctl, name: str, handler: Handler) -> None:
	"""Run `handler(ctl)` once before any command; raising aborts the invocation."""
	bundlectl_hooks_add(ctl, HOOK_GLOBAL_PRE, name, handler)


def bundlectl_hooks_add_external(
	ctl: Ctl, event: str, service: str, handler: Handler
) -> None:
	"""Register an override for an external service.

	`EXTERNAL_STATUS` handlers are called as `handler(ctl, detail)` with
	detail "sparse" or "verbose" and return the status text.
	`EXTERNAL_CLEANSE` handlers are called as `handler(ctl, perform_delete)`.
	"""
	bundlectl_hooks_add(ctl, event, service, handler)


# Function: bundlectl_hooks_external CTL EVENT SERVICE
# Resolve an external service override or fail loudly.
def bundlectl_hooks_external(ctl: Ctl, event: str, service: str) -> Handler:
	handler = bundlectl_hooks_get(ctl, event, service)
	if handler is None:
		raise MissingHandlerError(event, service)
	return handler


# Function: bundlectl_hooks_run_global_pre CTL
# Run every global pre-hook in registration order.
def bundlectl_hooks_run_global_pre(ctl: Ctl) -> bool:
	"""Run global pre-hooks; False when one of them raised."""
	for (event, name), hook in list(ctl.hooks.hooks.items()):
		if event != HOOK_GLOBAL_PRE:
			continue
		try:
			hook(ctl)
		except Exception as e:
			bundlectl_util_log("error", f"Global pre-hook '{name}' failed with: '{e}'")
			return False
	return True


# Function: bundlectl_hooks_command_pre CTL COMMAND SERVICE
# Decide whether the command may run.
def bundlectl_hooks_command_pre(ctl: Ctl, command: str, service: Optional[str]) -> bool:
	"""Run the command's pre-hook, or apply the external-service guard.

	Without a registered pre-hook, supervisor sub-commands aimed at an
	external service are refused since they cannot be managed from here.
	"""
	hook = bundlectl_hooks_get(ctl, HOOK_PRE, command)
	if hook is not None:
		return bool(hook(ctl, service))
	if service is None:
		return True
	if command in SV_COMMAND_NAMES and bundlectl_config_service_external(ctl, service):
		bundlectl_util_log("error", bundlectl_external_error(ctl, service))
		return False
	return True


def bundlectl_hooks_command_post(ctl: Ctl, command: str, service: Optional[str]) -> None:
	hook = bundlectl_hooks_get(ctl, HOOK_POST, command)
	if hook is not None:
		hook(ctl, service)


# -----------------------------------------------------------------------------
#
# EXTERNAL SERVICES
#
# -----------------------------------------------------------------------------


def bundlectl_external_error(ctl: Ctl, service: str) -> str:
	"""Explain where an external service has to be managed."""
	settings = bundlectl_config_external_services(ctl).get(service, {})
	return (
		"-------------------------------------------------------------------\n"
		f"The service {service} is running externally and cannot be managed\n"
		f"via {ctl.exe_name}.  Please log into {settings.get('vip')}\n"
		"to manage it directly.\n"
		"-------------------------------------------------------------------"
	)


# Function: bundlectl_external_header CTL TITLE
# Decorate output only when there are external services to report on.
def bundlectl_external_header(ctl: Ctl, title: str) -> None:
	if not bundlectl_config_external_services(ctl):
		return
	bundlectl_ctl_out(ctl, "-------------------")
	bundlectl_ctl_out(ctl, f" {title} ")
	bundlectl_ctl_out(ctl, "-------------------")


def bundlectl_external_status_pre_hook(ctl: Ctl, service: Optional[str] = None) -> bool:
	if service is None:
		bundlectl_external_header(ctl, "Internal Services")
	return True


# Function: bundlectl_external_status_post_hook CTL SERVICE
# Report external services after the local status fan-out.
def bundlectl_external_status_post_hook(ctl: Ctl, service: Optional[str] = None) -> None:
	"""Print external service status through their override handlers.

	A summary (`status` alone) asks every external service for "sparse"
	detail; naming an external service asks it for "verbose" detail.
	"""
	if service is None:
		bundlectl_external_header(ctl, "External Services")
		for name in bundlectl_config_external_services(ctl):
			handler = bundlectl_hooks_external(ctl, EXTERNAL_STATUS, name)
			bundlectl_ctl_out(ctl, handler(ctl, "sparse"))
	elif bundlectl_config_service_external(ctl, service):
		handler = bundlectl_hooks_external(ctl, EXTERNAL_STATUS, service)
		bundlectl_ctl_out(ctl, handler(ctl, "verbose"))


def bundlectl_external_service_list_pre_hook(
	ctl: Ctl, service: Optional[str] = None
) -> bool:
	bundlectl_external_header(ctl, "Internal Services")
	return True


def bundlectl_external_service_list_post_hook(
	ctl: Ctl, service: Optional[str] = None
) -> None:
	bundlectl_external_header(ctl, "External Services")
	for name, settings in bundlectl_config_external_services(ctl).items():
		bundlectl_ctl_out(ctl, f" >  {name} on {settings.get('vip')}")


# Function: bundlectl_external_cleanse_post_hook CTL SERVICE
# Let every external service clean up its own data.
def bundlectl_external_cleanse_post_hook(ctl: Ctl, service: Optional[str] = None) -> None:
	"""Call each external service's cleanse override.

	Data is only deleted with `--with-external`; otherwise the override
	explains how to clean up by hand.
	"""
	perform_delete = ctl.with_external
	for name in bundlectl_config_external_services(ctl):
		handler = bundlectl_hooks_external(ctl, EXTERNAL_CLEANSE, name)
		if perform_delete:
			bundlectl_ctl_out(ctl, f"Deleting data from external service: {name}")
		handler(ctl, perform_delete)


# -----------------------------------------------------------------------------
#
# SERVICE GROUP COMMANDS
#
# -----------------------------------------------------------------------------


# Function: bundlectl_sv_permitted CTL SUBCOMMAND SERVICE
# Filter applied when a sub-command fans out over every service.
def bundlectl_sv_permitted(ctl: Ctl, sv_cmd: str, service: str) -> bool:
	"""Check if `service` takes part in a fan-out of `sv_cmd`."""
	# Directories left behind by an upgrade must neither start nor show up
	if service in bundlectl_config_removed_services(ctl):
		return sv_cmd == "stop"
	# The failover coordinator is only ever queried implicitly
	if service == ctl.failover_service:
		return sv_cmd == "status"
	if sv_cmd == "status":
		return service not in bundlectl_config_hidden_services(ctl)
	return True


# Function: bundlectl_sv_run_for_service CTL SUBCOMMAND SERVICE
# Run a sub-command for one service if it is enabled.
def bundlectl_sv_run_for_service(ctl: Ctl, sv_cmd: str, service: str) -> int:
	if bundlectl_service_enabled(ctl, service):
		return bundlectl_service_control(ctl, service, sv_cmd)
	if sv_cmd == "status" and _verbose:
		bundlectl_util_log("info", f"{service} disabled")
	return 0


# Function: bundlectl_sv_run CTL SUBCOMMAND SERVICE
# Fan a sub-command out over one or all services.
def bundlectl_sv_run(ctl: Ctl, sv_cmd: str, service: Optional[str] = None) -> CommandResult:
	"""Run `sv_cmd` for `service`, or for every permitted service.

	The exit status is the sum of the per-service statuses: non-zero means
	at least one service failed, the magnitude carries no meaning.
	"""
	sv_cmd = {"usr1": "1", "usr2": "2"}.get(sv_cmd, sv_cmd)
	exit_status = 0
	if service:
		exit_status += bundlectl_sv_run_for_service(ctl, sv_cmd, service)
	else:
		for name in bundlectl_service_list(ctl):
			if bundlectl_sv_permitted(ctl, sv_cmd, name):
				exit_status += bundlectl_sv_run_for_service(ctl, sv_cmd, name)
	return bundlectl_exit(exit_status)


def bundlectl_sv_command(ctl: Ctl, command: str, service: Optional[str] = None) -> CommandResult:
	"""Handler bound to every supervisor sub-command."""
	return bundlectl_sv_run(ctl, command, service)


# -----------------------------------------------------------------------------
#
# PROCESS
#
# -----------------------------------------------------------------------------


def bundlectl_process_pidfile(ctl: Ctl, service: str) -> Path:
	"""Return path of the PID file runit keeps for the service."""
	return ctl.sv_path / service / "supervise" / "pid"


# Function: bundlectl_process_PID_read PATH
# Read PID from pidfile, return None if missing/invalid.
def bundlectl_process_PID_read(pidfile: Path) -> Optional[int]:
	"""Read PID from file, return None if missing or invalid."""
	if not pidfile.exists():
		return None
	try:
		content = pidfile.read_text().strip()
		return int(content) if content.isdigit() else None
	except (OSError, ValueError):
		return None


# Function: bundlectl_process_pgrp PID
# Resolve the process group of a PID.
def bundlectl_process_pgrp(PID: int) -> Optional[int]:
	"""Return the process group of PID, or None when it is not running."""
	# getpgid(0) answers for the caller itself
	if PID <= 0:
		return None
	try:
		return os.getpgid(PID)
	except (OSError, OverflowError):
		return None


# Function: bundlectl_process_group_members PGRP
# List PIDs still alive in a process group.
def bundlectl_process_group_members(pgrp: int) -> list[int]:
	"""Scan /proc for processes whose process group is `pgrp`."""
	members = []
	proc = Path("/proc")
	try:
		entries = list(proc.iterdir())
	except OSError:
		return members
	for entry in entries:
		if not entry.name.isdigit():
			continue
		try:
			stat = (entry / "stat").read_text()
			# Fields after the parenthesized command: state ppid pgrp ...
			fields = stat.rsplit(")", 1)[1].split()
			if int(fields[2]) == pgrp:
				members.append(int(entry.name))
		except (OSError, ValueError, IndexError):
			continue
	return sorted(members)


# Function: bundlectl_process_kill_group PGRP
# Send SIGKILL to a whole process group.
def bundlectl_process_kill_group(pgrp: int) -> bool:
	"""SIGKILL every process in the group. Returns True if successful."""
	try:
		os.killpg(pgrp, signal.SIGKILL)
		return True
	except (OSError, ProcessLookupError):
		return False


# Function: bundlectl_cmd_graceful_kill CTL COMMAND SERVICE
# Stop services, then SIGKILL whatever is left in their process groups.
def bundlectl_cmd_graceful_kill(
	ctl: Ctl, command: str = "graceful-kill", service: Optional[str] = None
) -> CommandResult:
	"""Attempt a cooperative stop, then SIGKILL the entire process group.

	The group is targeted rather than the PID so forked children sharing it
	go down too. The first failing service determines the exit status.
	"""
	exit_status = 0
	for name in bundlectl_service_list(ctl):
		if service is not None and name != service:
			continue

		if not bundlectl_service_enabled(ctl, name):
			bundlectl_util_log("warn", f"{name} disabled, not stopping")
			if exit_status == 0:
				exit_status = 1
			continue

		PID = bundlectl_process_PID_read(bundlectl_process_pidfile(ctl, name))
		if PID is None:
			bundlectl_util_log(
				"warn",
				f"could not find {name} runit pidfile (service already stopped?), "
				"cannot attempt SIGKILL...",
			)
			code = bundlectl_service_control(ctl, name, "stop")
			if exit_status == 0 and code != 0:
				exit_status = code
			continue

		pgrp = bundlectl_process_pgrp(PID)
		if pgrp is None:
			bundlectl_util_log(
				"warn",
				f"could not find pgrp of pid {PID} (not running?), "
				"cannot attempt SIGKILL...",
			)
			code = bundlectl_service_control(ctl, name, "stop")
			if exit_status == 0 and code != 0:
				exit_status = code
			continue

		bundlectl_service_control(ctl, name, "stop")
		pids = bundlectl_process_group_members(pgrp)
		if pids:
			bundlectl_util_log(
				"warn",
				"found stuck pids still running in process group: "
				f"{' '.join(str(p) for p in pids)}, sending SIGKILL",
			)
			bundlectl_process_kill_group(pgrp)
	return bundlectl_exit(exit_status)


# -----------------------------------------------------------------------------
#
# MAINTENANCE
#
# -----------------------------------------------------------------------------


# Function: bundlectl_maintenance_remove_bootstrap CTL
# Drop the OS-level auto-start registration of the supervision tree.
def bundlectl_maintenance_remove_bootstrap(ctl: Ctl) -> None:
	"""Remove the upstart job and inittab entry, then have init reload."""
	upstart = bundlectl_util_rooted(ctl.root, f"/etc/init/{ctl.name}-runsvdir.conf")
	inittab = bundlectl_util_rooted(ctl.root, "/etc/inittab")
	marker = f"{ctl.base_path}/embedded/bin/runsvdir-start"
	try:
		if upstart.exists():
			upstart.unlink()
		if inittab.exists():
			lines = inittab.read_text().splitlines(keepends=True)
			kept = [line for line in lines if marker not in line]
			if len(kept) != len(lines):
				staged = inittab.with_name("inittab.new")
				staged.write_text("".join(kept))
				staged.replace(inittab)
	except OSError as e:
		bundlectl_util_log("warn", f"Failed to remove supervisor bootstrap: {e}")
	bundlectl_util_run(["kill", "-1", "1"])


# Function: bundlectl_maintenance_backup CTL
# Copy the configuration directory to a fresh timestamped backup.
def bundlectl_maintenance_backup(ctl: Ctl) -> Path:
	backup_dir = ctl.backup_root / datetime.now().strftime(
		f"{ctl.name}-cleanse-%Y-%m-%dT%H:%M"
	)
	try:
		ctl.backup_root.mkdir(parents=True, exist_ok=True)
		if backup_dir.exists():
			shutil.rmtree(backup_dir)
		if ctl.etc_path.exists():
			shutil.copytree(ctl.etc_path, backup_dir, symlinks=True)
	except OSError as e:
		raise BundleCtlError(f"Failed to back up {ctl.etc_path}: {e}") from e
	ctl.backup_dir = backup_dir
	return backup_dir


# Function: bundlectl_maintenance_remove_paths PATTERNS
# Recursively delete every path matching the patterns.
def bundlectl_maintenance_remove_paths(patterns: list[str]) -> int:
	"""Delete matches of each glob pattern, returning the failure count."""
	failures = 0
	for pattern in patterns:
		for match in sorted(glob.glob(pattern)):
			path = Path(match)
			bundlectl_util_log("debug", f"rm -rf {path}")
			try:
				if path.is_dir() and not path.is_symlink():
					shutil.rmtree(path)
				else:
					path.unlink()
			except OSError as e:
				bundlectl_util_log("warn", f"Failed to remove {path}: {e}")
				failures += 1
	return failures


# Function: bundlectl_maintenance_sweep CTL
# HUP, TERM, then KILL everything the bundle may have left running.
def bundlectl_maintenance_sweep(ctl: Ctl) -> None:
	bundlectl_ctl_out(
		ctl,
		"Terminating processes running under application users. "
		"This will take a few seconds.",
	)
	for stage, sig in enumerate(("HUP", "TERM", "KILL")):
		if stage:
			time.sleep(BUNDLECTL_KILL_GRACE)
		if ctl.kill_users:
			bundlectl_util_run(["pkill", f"-{sig}", "-u", ",".join(ctl.kill_users)])
		bundlectl_util_run(["pkill", f"-{sig}", "-f", f"runsvdir -P {ctl.service_path}"])
	for name in bundlectl_service_list(ctl):
		bundlectl_util_run(["pkill", "-KILL", "-f", f"runsv {name}"])


# Function: bundlectl_maintenance_cleanup CTL PATTERNS
# Stop everything, back up the configuration, and delete `patterns`.
def bundlectl_maintenance_cleanup(ctl: Ctl, patterns: list[str]) -> CommandResult:
	"""Shared teardown of `cleanse` and `uninstall`.

	Every step is best-effort except the configuration backup, which has to
	succeed before anything is deleted.
	"""
	bundlectl_sv_run(ctl, "stop")
	bundlectl_maintenance_remove_bootstrap(ctl)
	backup_dir = bundlectl_maintenance_backup(ctl)
	bundlectl_maintenance_remove_paths(patterns)
	bundlectl_cmd_graceful_kill(ctl)
	bundlectl_maintenance_sweep(ctl)
	bundlectl_ctl_out(ctl, f"Your config files have been backed up to {backup_dir}.")
	return bundlectl_exit(0)


# Function: bundlectl_maintenance_cleanse_warning CTL CONFIRMED
# Warn, then give the operator a window to cancel.
def bundlectl_maintenance_cleanse_warning(ctl: Ctl, confirmed: bool) -> None:
	"""Print the cleanse warning and wait unless already confirmed.

	An interrupt during the wait raises CommandAborted(0): cancelling is not
	a failure and nothing has been touched yet.
	"""
	display = ctl.display_name
	bundlectl_ctl_out(
		ctl,
		"    *******************************************************************\n"
		"    * * * * * * * * * * *       STOP AND READ       * * * * * * * * * *\n"
		"    *******************************************************************\n"
		"    This command will delete *all* local configuration, log, and\n"
		f"    variable data associated with {display}.",
	)
	if ctl.with_external:
		bundlectl_ctl_out(
			ctl,
			f"    This will also delete externally hosted {display} data.\n"
			"    This means that any service you have configured as 'external'\n"
			f"    will have any {display} permanently deleted.",
		)
	elif bundlectl_config_external_services(ctl):
		bundlectl_ctl_out(
			ctl,
			"\n"
			f"    Important note: If you also wish to delete externally hosted {display}\n"
			f"    data, please hit CTRL+C now and run '{ctl.exe_name} cleanse --with-external'",
		)

	if confirmed:
		return
	data = "local, and remote data" if ctl.with_external else "and local data"
	bundlectl_ctl_out(
		ctl,
		"\n"
		f"    You have {BUNDLECTL_CLEANSE_WAIT} seconds to hit CTRL-C before configuration,\n"
		f"    logs, {data} for this application are permanently\n"
		"    deleted.\n"
		"    *******************************************************************\n",
	)
	try:
		time.sleep(BUNDLECTL_CLEANSE_WAIT)
	except KeyboardInterrupt:
		bundlectl_ctl_out(ctl, "")
		raise CommandAborted(0)


def bundlectl_cmd_cleanse(ctl: Ctl, command: str = "cleanse", service: Optional[str] = None) -> CommandResult:
	"""Delete all bundle data and start from scratch."""
	confirmed = service == "yes" or "yes" in ctl.extra_args
	bundlectl_maintenance_cleanse_warning(ctl, confirmed)
	return bundlectl_maintenance_cleanup(
		ctl,
		[
			os.path.join(glob.escape(str(ctl.service_path)), "*"),
			glob.escape(str(bundlectl_util_rooted(ctl.root, "/tmp/opt"))),
			glob.escape(str(ctl.data_path)),
			glob.escape(str(ctl.etc_path)),
			glob.escape(str(ctl.log_path)),
		],
	)


def bundlectl_cmd_uninstall(ctl: Ctl, command: str = "uninstall", service: Optional[str] = None) -> CommandResult:
	"""Kill all processes and remove the supervisor, preserving data."""
	return bundlectl_maintenance_cleanup(
		ctl, [glob.escape(str(bundlectl_util_rooted(ctl.root, "/tmp/opt")))]
	)


# -----------------------------------------------------------------------------
#
# LICENSE
#
# -----------------------------------------------------------------------------


def bundlectl_license_path(ctl: Ctl) -> Path:
	return ctl.base_path / "LICENSE"


def bundlectl_license_marker(ctl: Ctl) -> Path:
	return ctl.data_path / ".license.accepted"


# Function: bundlectl_license_ask CTL
# Show the license and ask the operator to accept it.
def bundlectl_license_ask(ctl: Ctl) -> bool:
	"""Interactive acceptance; only possible on a terminal."""
	bundlectl_ctl_out(
		ctl,
		"To use this software, you must agree to the terms of the software "
		"license agreement.",
	)
	if not sys.stdin.isatty():
		bundlectl_ctl_out(
			ctl,
			"Please view and accept the software license agreement, "
			"or pass --accept-license.",
		)
		return False
	try:
		input("Press Enter to continue.")
		bundlectl_util_run(["less", str(bundlectl_license_path(ctl))])
		response = input(
			"Type 'yes' to accept the software license agreement, "
			"or anything else to cancel.\n"
		)
	except EOFError:
		response = ""
	if response.strip().lower() == "yes":
		return True
	bundlectl_ctl_out(ctl, "You have not accepted the software license agreement.")
	return False


# Function: bundlectl_license_check CTL OVERRIDE_ACCEPT
# Persist license acceptance, asking for it when needed.
def bundlectl_license_check(ctl: Ctl, override_accept: bool = False) -> bool:
	"""Return True once the license is accepted (or there is none)."""
	if not bundlectl_license_path(ctl).exists():
		return True
	marker = bundlectl_license_marker(ctl)
	if marker.exists():
		return True
	if override_accept or bundlectl_license_ask(ctl):
		ctl.data_path.mkdir(parents=True, exist_ok=True)
		marker.touch()
		return True
	bundlectl_ctl_out(ctl, "Please accept the software license agreement to continue.")
	return False


# -----------------------------------------------------------------------------
#
# CONVERGE
#
# -----------------------------------------------------------------------------


# Function: bundlectl_converge_remove_node_state CTL
# Drop node state cached by the previous configuration run.
def bundlectl_converge_remove_node_state(ctl: Ctl) -> bool:
	node_cache = ctl.base_path / "embedded" / "nodes"
	try:
		if node_cache.exists():
			shutil.rmtree(node_cache)
	except OSError:
		bundlectl_ctl_out(ctl, "Could not remove cached node state!")
		return False
	return True


# Function: bundlectl_converge_run CTL ATTRIBUTES EXTRA
# Run the configuration-management client against an attributes file.
def bundlectl_converge_run(
	ctl: Ctl, attributes: Path, extra: Optional[list[str]] = None
) -> Optional[int]:
	"""Run chef-client in local mode; None when node state could not be reset."""
	embedded = ctl.base_path / "embedded"
	cmd = [str(embedded / "bin" / "chef-client")]
	if _verbose:
		cmd.extend(["-l", "debug"])
	elif _quiet:
		# The null formatter is silent, so say something
		bundlectl_ctl_out(ctl, f"Reconfiguring {ctl.display_name}.")
		cmd.extend(["-l", "fatal", "-F", "null"])
	if not bundlectl_converge_remove_node_state(ctl):
		return None
	cmd.extend(["-z", "-c", str(embedded / "cookbooks" / "solo.rb")])
	cmd.extend(["-j", str(attributes)])
	cmd.extend(extra or [])
	code, _, _ = bundlectl_util_run(cmd)
	return code


def bundlectl_cmd_reconfigure(ctl: Ctl, command: str = "reconfigure", service: Optional[str] = None) -> CommandResult:
	"""Reconfigure the application."""
	if not bundlectl_license_check(ctl, ctl.accept_license):
		return bundlectl_exit(1)
	code = bundlectl_converge_run(
		ctl, ctl.base_path / "embedded" / "cookbooks" / "dna.json"
	)
	if code == 0:
		bundlectl_ctl_out(ctl, f"{ctl.display_name} Reconfigured!")
		return bundlectl_exit(0)
	return bundlectl_exit(1)


def bundlectl_cmd_show_config(ctl: Ctl, command: str = "show-config", service: Optional[str] = None) -> CommandResult:
	"""Show the configuration that reconfigure would generate."""
	code = bundlectl_converge_run(
		ctl,
		ctl.base_path / "embedded" / "cookbooks" / "show-config.json",
		["-l", "fatal", "-F", "null"],
	)
	return bundlectl_exit(0 if code == 0 else 1)


# -----------------------------------------------------------------------------
#
# REPORTING COMMANDS
#
# -----------------------------------------------------------------------------


# Function: bundlectl_cmd_service_list CTL COMMAND SERVICE
# One service per line, enabled services marked with `*`.
def bundlectl_cmd_service_list(ctl: Ctl, command: str = "service-list", service: Optional[str] = None) -> CommandResult:
	for name in bundlectl_service_list(ctl):
		mark = "*" if bundlectl_service_enabled(ctl, name) else ""
		bundlectl_ctl_out(ctl, f"{name}{mark}")
	return bundlectl_exit(0)


# Function: bundlectl_tail_files CTL SERVICE
# Log files worth following under the log root.
def bundlectl_tail_files(ctl: Ctl, service: Optional[str] = None) -> list[Path]:
	"""List log files, skipping excluded paths and rotated/lock files."""
	root = ctl.log_path / service if service else ctl.log_path
	exclude = re.compile(ctl.log_exclude)
	files = []
	for dirpath, _, filenames in os.walk(root, followlinks=True):
		for filename in filenames:
			path = Path(dirpath) / filename
			if any(fnmatch.fnmatch(str(path), p) for p in ctl.log_path_exclude):
				continue
			if exclude.search(str(path.relative_to(ctl.log_path))):
				continue
			files.append(path)
	return sorted(files)


def bundlectl_cmd_tail(ctl: Ctl, command: str = "tail", service: Optional[str] = None) -> int:
	"""Follow the logs of all services, or of one service."""
	files = bundlectl_tail_files(ctl, service)
	if not files:
		bundlectl_util_log("warn", f"No log files found under {ctl.log_path}")
		return 0
	code, _, _ = bundlectl_util_run(
		["tail", "--follow=name", "--retry"] + [str(f) for f in files]
	)
	return code


# Function: bundlectl_cmd_help CTL COMMAND SERVICE
# Print every registered command once.
def bundlectl_cmd_help(ctl: Ctl, command: str = "help", service: Optional[str] = None) -> CommandResult:
	"""Print flat commands, then each category with its commands."""
	bundlectl_ctl_out(ctl, f"{ctl.exe_name}: command (subcommand)")
	categorized = {
		name for commands in ctl.registry.categories.values() for name in commands
	}
	for name in sorted(ctl.registry.commands):
		if name in categorized:
			continue
		bundlectl_ctl_out(ctl, name)
		bundlectl_ctl_out(ctl, f"  {ctl.registry.commands[name].description}")
	for category, commands in ctl.registry.categories.items():
		if not commands:
			continue
		title = " ".join(word.capitalize() for word in category.replace("-", " ").split())
		bundlectl_ctl_out(ctl, f"{title} Commands:")
		for name in sorted(commands):
			bundlectl_ctl_out(ctl, f"  {name}")
			bundlectl_ctl_out(ctl, f"    {commands[name].description}")
	# Help is not an error; callers showing it for an error set their own code
	return bundlectl_exit(0)


# -----------------------------------------------------------------------------
#
# CTL
#
# -----------------------------------------------------------------------------


# Function: bundlectl_ctl_create NAME ...
# Build the invocation state and register the built-in commands and hooks.
def bundlectl_ctl_create(
	name: str,
	merge_service_commands: bool = True,
	display_name: Optional[str] = None,
	root: Optional[Path] = None,
	package_name: Optional[str] = None,
	exe_name: Optional[str] = None,
	kill_users: Optional[list[str]] = None,
	failover_service: Optional[str] = None,
) -> Ctl:
	"""Create a Ctl for the bundle `name`."""
	root = Path(root) if root is not None else BUNDLECTL_ROOT
	base_path = bundlectl_util_rooted(root, f"/opt/{name}")
	ctl = Ctl(
		name=name,
		display_name=display_name or name,
		package_name=package_name or name,
		root=root,
		base_path=base_path,
		sv_path=base_path / "sv",
		service_path=base_path / "service",
		etc_path=bundlectl_util_rooted(root, f"/etc/{name}"),
		data_path=bundlectl_util_rooted(root, f"/var/opt/{name}"),
		log_path=bundlectl_util_rooted(root, f"/var/log/{name}"),
		backup_root=bundlectl_util_rooted(root, "/root"),
		exe_name=exe_name or os.path.basename(sys.argv[0]) or "bundlectl",
		merge_service_commands=merge_service_commands,
		kill_users=list(kill_users or []),
		failover_service=failover_service or BUNDLECTL_FAILOVER_SERVICE,
	)
	bundlectl_ctl_register_builtins(ctl)
	return ctl


# Function: bundlectl_ctl_register_builtins CTL
# Register the default commands and the external-service hooks.
def bundlectl_ctl_register_builtins(ctl: Ctl) -> None:
	display = ctl.display_name
	general = [
		(
			"show-config",
			"Show the configuration that would be generated by reconfigure.",
			ARITY_NO_ARG,
			bundlectl_cmd_show_config,
		),
		("reconfigure", "Reconfigure the application.", ARITY_OPTIONAL_ARG, bundlectl_cmd_reconfigure),
		(
			"cleanse",
			f"Delete *all* {display} data, and start from scratch.",
			ARITY_OPTIONAL_ARG,
			bundlectl_cmd_cleanse,
		),
		(
			"uninstall",
			"Kill all processes and uninstall the process supervisor (data will be preserved).",
			ARITY_NO_ARG,
			bundlectl_cmd_uninstall,
		),
		("help", "Print this help message.", ARITY_NO_ARG, bundlectl_cmd_help),
	]
	for name, description, arity, handler in general:
		bundlectl_command_add(ctl, name, description, arity, handler, category="general")

	if ctl.merge_service_commands:
		for sv_cmd in SV_COMMAND_NAMES:
			bundlectl_command_bind(ctl, sv_cmd, bundlectl_sv_command)
		service_management = [
			("service-list", "List all the services (enabled services appear with a *.)", ARITY_NO_ARG, bundlectl_cmd_service_list),
			("status", "Show the status of all the services.", ARITY_OPTIONAL_ARG, None),
			("tail", "Watch the service logs of all enabled services.", ARITY_OPTIONAL_ARG, bundlectl_cmd_tail),
			("start", "Start services if they are down, and restart them if they stop.", ARITY_OPTIONAL_ARG, None),
			("stop", "Stop the services, and do not restart them.", ARITY_OPTIONAL_ARG, None),
			("restart", "Stop the services if they are running, then start them again.", ARITY_OPTIONAL_ARG, None),
			("once", "Start the services if they are down. Do not restart them if they stop.", ARITY_OPTIONAL_ARG, None),
			("hup", "Send the services a HUP.", ARITY_OPTIONAL_ARG, None),
			("term", "Send the services a TERM.", ARITY_OPTIONAL_ARG, None),
			("int", "Send the services an INT.", ARITY_OPTIONAL_ARG, None),
			("kill", "Send the services a KILL.", ARITY_OPTIONAL_ARG, None),
			(
				"graceful-kill",
				"Attempt a graceful stop, then SIGKILL the entire process group.",
				ARITY_OPTIONAL_ARG,
				bundlectl_cmd_graceful_kill,
			),
			("usr1", "Send the services a USR1.", ARITY_OPTIONAL_ARG, None),
			("usr2", "Send the services a USR2.", ARITY_OPTIONAL_ARG, None),
		]
		for name, description, arity, handler in service_management:
			bundlectl_command_add(
				ctl, name, description, arity, handler, category="service-management"
			)

	bundlectl_hooks_add_pre(ctl, "status", bundlectl_external_status_pre_hook)
	bundlectl_hooks_add_post(ctl, "status", bundlectl_external_status_post_hook)
	bundlectl_hooks_add_pre(ctl, "service-list", bundlectl_external_service_list_pre_hook)
	bundlectl_hooks_add_post(ctl, "service-list", bundlectl_external_service_list_post_hook)
	bundlectl_hooks_add_post(ctl, "cleanse", bundlectl_external_cleanse_post_hook)


# Function: bundlectl_ctl_load_file CTL PATH
# Load one extension file.
def bundlectl_ctl_load_file(ctl: Ctl, path: Path) -> Any:
	"""Execute an extension module with `ctl` in its globals."""
	path = Path(path)
	module_name = f"bundlectl_ext_{bundlectl_util_method_name(path.stem)}"
	spec = importlib.util.spec_from_file_location(module_name, path)
	if spec is None or spec.loader is None:
		raise BundleCtlError(f"Cannot load extension: {path}")
	module = importlib.util.module_from_spec(spec)
	module.ctl = ctl
	spec.loader.exec_module(module)
	register = getattr(module, "register", None)
	if callable(register):
		register(ctl)
	bundlectl_util_log("debug", f"Loaded extension: {path}")
	return module


# Function: bundlectl_ctl_load_files CTL PATH
# Load every `*.py` extension in a directory, in name order.
def bundlectl_ctl_load_files(ctl: Ctl, path: Path) -> None:
	for file in sorted(Path(path).glob("*.py")):
		bundlectl_ctl_load_file(ctl, file)


# Function: bundlectl_ctl_prepare_env CTL
# Point runit and PATH at the bundle.
def bundlectl_ctl_prepare_env(ctl: Ctl) -> None:
	os.environ["SVDIR"] = str(ctl.service_path)
	os.environ["PATH"] = os.pathsep.join(
		[
			str(ctl.base_path / "bin"),
			str(ctl.base_path / "embedded" / "bin"),
			os.environ.get("PATH", ""),
		]
	)


# -----------------------------------------------------------------------------
#
# CLI
#
# -----------------------------------------------------------------------------


# Function: bundlectl_CLI_build_parser EXE_NAME
# Build the parser for the global options.
def bundlectl_CLI_build_parser(exe_name: str = "bundlectl") -> argparse.ArgumentParser:
	"""Build the option parser.

	Commands are resolved through the command registry, so the parser only
	knows the global options; unknown options are kept for extensions.
	"""
	parser = argparse.ArgumentParser(prog=exe_name, add_help=False, allow_abbrev=False)
	parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
	parser.add_argument(
		"-q", "--quiet", action="store_true", help="Suppress non-error output"
	)
	parser.add_argument(
		"--with-external",
		action="store_true",
		help="Also act on externally hosted services (cleanse)",
	)
	parser.add_argument(
		"--accept-license",
		action="store_true",
		help="Accept the software license agreement (reconfigure)",
	)
	parser.add_argument(
		"--no-color", action="store_true", help="Disable colored output"
	)
	return parser


# Function: bundlectl_CLI_parse EXE_NAME ARGV
# Split `COMMAND [SERVICE] [OPTIONS]` into its parts.
def bundlectl_CLI_parse(
	exe_name: str, argv: list[str]
) -> tuple[Optional[str], Optional[str], argparse.Namespace, list[str]]:
	"""Return (command, service, options, extra arguments).

	Anything starting with `-` is an option; the first two remaining words
	are the command and the service.
	"""
	options = [arg for arg in argv if arg.startswith("-")]
	words = [arg for arg in argv if not arg.startswith("-")]
	args, extra = bundlectl_CLI_build_parser(exe_name).parse_known_args(options)
	command = words[0] if words else None
	service = words[1] if len(words) > 1 else None
	return command, service, args, extra + words[2:]


# Function: bundlectl_CLI_apply_options CTL ARGS EXTRA
# Record global options for the rest of the invocation.
def bundlectl_CLI_apply_options(
	ctl: Ctl, args: argparse.Namespace, extra: list[str]
) -> None:
	global _verbose, _quiet, _no_color
	_verbose = args.verbose
	_quiet = args.quiet
	_no_color = args.no_color or BUNDLECTL_NO_COLOR
	ctl.with_external = args.with_external
	ctl.accept_license = args.accept_license
	ctl.extra_args = list(extra)


# Function: bundlectl_run CTL ARGV
# Dispatch one command through the hook pipeline.
def bundlectl_run(ctl: Ctl, argv: list[str]) -> CommandResult:
	"""Run `argv` as `COMMAND [SERVICE] [OPTIONS]`.

	Order: global pre-hooks, the command's pre-hook (or the external-service
	guard), the handler, then the post-hook. A refused pre-hook skips both
	the handler and the post-hook and exits with EXIT_BLOCKED.
	"""
	bundlectl_ctl_prepare_env(ctl)
	argv = list(argv)
	if argv and argv[0] in ("--help", "-h"):
		argv[0] = "help"

	command, service, args, extra = bundlectl_CLI_parse(ctl.exe_name, argv)

	spec = bundlectl_command_lookup(ctl, command) if command else None
	if spec is None:
		bundlectl_ctl_out(ctl, "I don't know that command.")
		if command and service:
			bundlectl_ctl_out(ctl, f"Did you mean: {ctl.exe_name} {service} {command}?")
		bundlectl_cmd_help(ctl)
		return bundlectl_exit(EXIT_UNKNOWN_COMMAND)

	if service is not None and spec.arity != ARITY_OPTIONAL_ARG:
		bundlectl_ctl_out(ctl, f"The command {command} does not accept any arguments")
		return bundlectl_exit(EXIT_UNEXPECTED_ARGUMENT)

	bundlectl_CLI_apply_options(ctl, args, extra)

	if not bundlectl_hooks_run_global_pre(ctl):
		return bundlectl_exit(1)

	if not bundlectl_hooks_command_pre(ctl, command, service):
		return bundlectl_exit(EXIT_BLOCKED)

	handler = ctl.registry.methods.get(bundlectl_util_method_name(command), spec.handler)
	try:
		result = bundlectl_command_result(handler(ctl, command, service))
	except CommandAborted as e:
		return bundlectl_exit(e.code)
	except SystemExit as e:
		if e.code is None:
			code = 0
		elif isinstance(e.code, int):
			code = e.code
		else:
			code = 1
		result = bundlectl_exit(code)
	bundlectl_hooks_command_post(ctl, command, service)
	return result


# -----------------------------------------------------------------------------
#
# MAIN
#
# -----------------------------------------------------------------------------


# Function: bundlectl_main
# Main entry point.
def bundlectl_main(argv: Optional[list[str]] = None) -> int:
	"""Main entry point.

	A forced result ends the process with its code; any other result is
	returned so an embedding program can carry on.
	"""
	argv = sys.argv[1:] if argv is None else argv
	if argv and argv[0] in ("-V", "--version"):
		print(f"bundlectl {VERSION}")
		return 0

	try:
		ctl = bundlectl_ctl_create(
			BUNDLECTL_NAME,
			display_name=BUNDLECTL_DISPLAY_NAME or None,
			package_name=BUNDLECTL_PACKAGE or None,
			kill_users=[u for u in BUNDLECTL_KILL_USERS.split(",") if u],
		)
		for entry in BUNDLECTL_EXTENSIONS.split(os.pathsep):
			if not entry:
				continue
			for directory in sorted(glob.glob(entry)):
				bundlectl_ctl_load_files(ctl, Path(directory))
		result = bundlectl_run(ctl, argv)
	except BundleCtlError as e:
		bundlectl_util_log("error", str(e))
		return 1
	except KeyboardInterrupt:
		return 130
	if result.force_exit:
		sys.exit(result.code)
	return result.code


if __name__ == "__main__":
	sys.exit(bundlectl_main())

# EOF
