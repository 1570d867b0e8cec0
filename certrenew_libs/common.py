#!/usr/bin/env python3
"""Control plane certificate renewal cookbooks"""
from __future__ import annotations

__title__ = __doc__
import argparse
import logging
import re
from dataclasses import dataclass, fields
from datetime import timedelta
from enum import Enum
from functools import partial
from itertools import chain
from typing import Any, Callable
from unittest import mock

from spicerack import Spicerack
from spicerack.cookbook import CookbookRunnerBase
from wmflib.config import load_yaml_config

from certrenew_libs.errors import ConfigError
from certrenew_libs.k8s.kubernetes import CONTROL_PLANE_LABEL, KubernetesApi
from certrenew_libs.k8s.maintenance_pod import (
    DEFAULT_CRI_SOCKET,
    DEFAULT_IMAGE,
    DEFAULT_NAMESPACE,
    DEFAULT_PKI_DIR,
    DEFAULT_RENEW_BINARY,
    MaintenancePodSettings,
)
from certrenew_libs.k8s.polling import DEFAULT_INTERVAL_SECONDS, DEFAULT_MAX_ATTEMPTS, PollPolicy

LOGGER = logging.getLogger(__name__)
CONFIG_FILE_NAME = "certrenew.yaml"
DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
DURATION_UNITS = {
    "ns": timedelta(microseconds=1) / 1000,
    "us": timedelta(microseconds=1),
    "µs": timedelta(microseconds=1),
    "μs": timedelta(microseconds=1),
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}


def parse_duration(value: str) -> timedelta:
    """Parse a duration in the same format kubeadm and the rest of the go tools use, ex. '24h', '1h30m', '90s'."""
    stripped = value.strip()
    if stripped == "0":
        return timedelta(0)

    if not stripped:
        raise ConfigError("Empty duration")

    if stripped.startswith("-"):
        raise ConfigError(f"Negative durations are not allowed, got '{value}'")

    total = timedelta(0)
    position = 0
    for match in DURATION_PART_RE.finditer(stripped):
        if match.start() != position:
            break
        total += float(match.group(1)) * DURATION_UNITS[match.group(2)]
        position = match.end()

    if position == 0 or position != len(stripped):
        raise ConfigError(f"Invalid duration '{value}', expected something like '24h', '1h30m' or '90s'")

    return total


def parser_type_duration(value: str) -> str:
    """Validates a duration in argparser, keeps the original string as that's what gets passed along."""
    try:
        parse_duration(value)
    except ConfigError as error:
        raise argparse.ArgumentTypeError(str(error)) from error

    return value.strip()


class ArgparsableEnum(Enum):
    """Enum that behaves well with argparse.

    Example usage:

    class MyEnum(ArgparsableEnum):
        OPT1 = "option 1"
        OPT2 = "option 2"

    parser.add_argument(
        "--my-enum",
        choices=list(MyEnum),
        type=MyEnum,
        default=MyEnum.OPT1,
    )
    """

    def __str__(self):
        """Needed to show the nice string values and for argparse to use those to call the `type` parameter."""
        return self.value


@dataclass(frozen=True)
class CertRenewConfig:
    """Settings loaded from the certrenew.yaml file in the spicerack config dir."""

    kubeconfig: str | None = None
    context: str | None = None
    maintenance_namespace: str = DEFAULT_NAMESPACE
    maintenance_image: str = DEFAULT_IMAGE
    renew_binary: str = DEFAULT_RENEW_BINARY
    control_plane_selector: str = CONTROL_PLANE_LABEL
    pki_dir: str = DEFAULT_PKI_DIR
    cri_socket: str = DEFAULT_CRI_SOCKET
    poll_max_attempts: int = DEFAULT_MAX_ATTEMPTS
    poll_interval_seconds: float = DEFAULT_INTERVAL_SECONDS
    # fail instead of using the first one when there's more than one KubeadmControlPlane
    strict_control_plane: bool = False

    @classmethod
    def from_dict(cls, raw_config: dict[str, Any]) -> "CertRenewConfig":
        """Build the config from the loaded yaml, unknown keys are an error."""
        known_fields = {field.name: field for field in fields(cls)}
        unknown = set(raw_config) - set(known_fields)
        if unknown:
            raise ConfigError(f"Unknown keys in {CONFIG_FILE_NAME}: {', '.join(sorted(unknown))}")

        for key in ("poll_max_attempts", "poll_interval_seconds"):
            value = raw_config.get(key)
            if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float))):
                raise ConfigError(f"{key} must be a number, got '{value}'")

        strict_control_plane = raw_config.get("strict_control_plane")
        if strict_control_plane is not None and not isinstance(strict_control_plane, bool):
            raise ConfigError(f"strict_control_plane must be true or false, got '{strict_control_plane}'")

        for key, value in raw_config.items():
            if key in ("poll_max_attempts", "poll_interval_seconds", "strict_control_plane") or value is None:
                continue
            if not isinstance(value, str):
                raise ConfigError(f"{key} must be a string, got '{value}'")

        return cls(**{key: value for key, value in raw_config.items() if value is not None})

    def with_overrides(self, **overrides: Any) -> "CertRenewConfig":
        """Get a copy with the given non-None values replaced, used for command line options."""
        values = {field.name: getattr(self, field.name) for field in fields(self)}
        values.update({key: value for key, value in overrides.items() if value is not None})
        return CertRenewConfig(**values)

    def get_pod_settings(self) -> MaintenancePodSettings:
        """Settings for the maintenance pods."""
        return MaintenancePodSettings(
            namespace=self.maintenance_namespace,
            image=self.maintenance_image,
            renew_binary=self.renew_binary,
            pki_dir=self.pki_dir,
            cri_socket=self.cri_socket,
        )

    def get_poll_policy(self) -> PollPolicy:
        """Policy for the waits of the in-place renewal."""
        try:
            return PollPolicy(max_attempts=int(self.poll_max_attempts), interval_seconds=self.poll_interval_seconds)
        except ValueError as error:
            raise ConfigError(str(error)) from error


@dataclass(frozen=True)
class CommonOpts:
    """Common certificate renewal cookbook options."""

    kubeconfig: str | None = None
    context: str | None = None
    task_id: str | None = None
    no_dologmsg: bool = False

    def to_cli_args(self) -> list[str]:
        """Helper to unwrap the options for use with argument parsers."""
        args = []
        if self.kubeconfig:
            args.extend(["--kubeconfig", self.kubeconfig])
        if self.context:
            args.extend(["--context", self.context])
        if self.task_id:
            args.extend(["--task-id", self.task_id])
        if self.no_dologmsg:
            args.extend(["--no-dologmsg"])

        return args


def add_common_opts(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    """Adds the common options to a cookbook parser."""
    parser.add_argument(
        "--kubeconfig",
        required=False,
        default=None,
        help="Path to the kubeconfig of the target cluster, overrides the one in the config file.",
    )
    parser.add_argument(
        "--context",
        required=False,
        default=None,
        help="Kubeconfig context to use, overrides the one in the config file.",
    )
    parser.add_argument(
        "--task-id",
        required=False,
        default=None,
        help="Id of the task related to this operation (ex. T123456).",
    )
    parser.add_argument(
        "--no-dologmsg",
        required=False,
        action="store_true",
        help="To disable dologmsg calls (no SAL messages on IRC).",
    )

    return parser


def with_common_opts(spicerack: Spicerack, args: argparse.Namespace, runner: Callable) -> Callable:
    """Helper to add CommonOpts to a cookbook instantiation."""
    no_dologmsg = bool(spicerack.dry_run or args.no_dologmsg)
    common_opts = CommonOpts(
        kubeconfig=args.kubeconfig, context=args.context, task_id=args.task_id, no_dologmsg=no_dologmsg
    )

    return partial(runner, common_opts=common_opts)


class CertRenewCookbookRunnerBase(CookbookRunnerBase):
    """Tweaks to the base cookbook runner.

    Current tweaks:
    * Load the certrenew.yaml config, with the command line options on top.
    * Format the SAL messages with the task id, or disable them.
    """

    def __init__(self, spicerack: Spicerack, common_opts: CommonOpts):
        """Init"""
        self.spicerack = spicerack
        self.common_opts = common_opts
        self._setup_logging(common_opts)
        self.config = self._load_config().with_overrides(kubeconfig=common_opts.kubeconfig, context=common_opts.context)

    def _load_config(self) -> CertRenewConfig:
        config_path = self.spicerack.config_dir / CONFIG_FILE_NAME
        if not config_path.exists():
            LOGGER.debug("No config found on %s. Continuing...", config_path)
            return CertRenewConfig()

        LOGGER.info("Loading config from %s", config_path)
        return CertRenewConfig.from_dict(load_yaml_config(config_file=config_path, raises=False) or {})

    def _setup_logging(self, common_opts: CommonOpts):
        if common_opts.no_dologmsg:
            self.spicerack.sal_logger.handlers.clear()
            return

        task_id = f" ({common_opts.task_id})" if common_opts.task_id else ""
        formatter = logging.Formatter(f"%(message)s{task_id}")
        for handler in self.spicerack.sal_logger.handlers:
            handler.setFormatter(formatter)

    def sal_log(self, message: str) -> None:
        """Log an action to the SAL (server admin log)."""
        self.spicerack.sal_logger.info("%s", message)

    def get_kubernetes_api(self) -> KubernetesApi:
        """Get a gateway to the target cluster."""
        return KubernetesApi.from_config(kubeconfig=self.config.kubeconfig, context=self.config.context)


# Poor man's namespace to compensate for the restriction to not create modules
@dataclass(frozen=True)
class UtilsForTesting:
    """Generic testing utilities."""

    @staticmethod
    def to_parametrize(test_cases: dict[str, dict[str, Any]]) -> dict[str, str | list[Any]]:
        """Helper for parametrized tests.

        Use like:
        @pytest.mark.parametrize(**_to_parametrize(
            {
                "Test case 1": {"param1": "value1", "param2": "value2"},
                # will set the value of the missing params as `None`
                "Test case 2": {"param1": "value1"},
                ...
            }
        ))
        """
        _param_names = sorted(set(chain(*[list(params.keys()) for params in test_cases.values()])))

        def _fill_up_params(test_case_params):
            return [test_case_params.get(must_param, None) for must_param in _param_names]

        if len(_param_names) == 1:
            argvalues = [_fill_up_params(test_case_params)[0] for test_case_params in test_cases.values()]

        else:
            argvalues = [_fill_up_params(test_case_params) for test_case_params in test_cases.values()]

        return {"argnames": ",".join(_param_names), "argvalues": argvalues, "ids": list(test_cases.keys())}

    @staticmethod
    def get_fake_spicerack(config_dir: Any = None, dry_run: bool = False) -> mock.MagicMock:
        """Create a fake spicerack, with a real logger as sal_logger so the handlers can be played with."""
        fake_spicerack = mock.create_autospec(spec=Spicerack, instance=True)
        fake_spicerack.dry_run = dry_run
        fake_spicerack.config_dir = config_dir
        fake_spicerack.sal_logger = logging.getLogger("test_sal_logger")
        return fake_spicerack
