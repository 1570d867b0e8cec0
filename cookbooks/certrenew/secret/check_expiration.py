r"""Kubernetes - report the certificates about to expire

Looks for certificates expiring within the given number of days in the TLS secrets, the kubeconfig secrets of the
workload clusters and the node certificates (as reported by the 'cert-expiration' node annotation).

Usage example:
    cookbook certrenew.secret.check_expiration \
        --duration 60 \
        --output yaml

"""
from __future__ import annotations

import argparse
import logging
import sys

from spicerack import Spicerack
from spicerack.cookbook import CookbookBase

from certrenew_libs.common import CertRenewCookbookRunnerBase, CommonOpts, add_common_opts, with_common_opts
from certrenew_libs.errors import CertRenewError
from certrenew_libs.k8s.expiration import ReportFormat, check_expiration, format_report

LOGGER = logging.getLogger(__name__)


def _positive_days(value: str) -> int:
    try:
        days = int(value)
    except ValueError as error:
        raise argparse.ArgumentTypeError(f"Expected a number of days, got '{value}'") from error

    if days < 0:
        raise argparse.ArgumentTypeError(f"The number of days can't be negative, got '{value}'")

    return days


class CheckExpiration(CookbookBase):
    """Report the certificates of the cluster that expire within the given number of days."""

    title = __doc__

    def argument_parser(self):
        """Parse the command line arguments for this cookbook."""
        parser = super().argument_parser()
        add_common_opts(parser)
        parser.add_argument(
            "--duration",
            required=False,
            default=30,
            type=_positive_days,
            help="Report the certificates expiring in less than this many days. Default is %(default)s.",
        )
        parser.add_argument(
            "--output",
            required=False,
            choices=list(ReportFormat),
            type=ReportFormat,
            default=ReportFormat.TABLE,
            help="Format of the report. Default is %(default)s.",
        )
        return parser

    def get_runner(self, args: argparse.Namespace) -> CertRenewCookbookRunnerBase:
        """Get runner"""
        return with_common_opts(
            self.spicerack,
            args,
            CheckExpirationRunner,
        )(
            spicerack=self.spicerack,
            duration=args.duration,
            output=args.output,
        )


class CheckExpirationRunner(CertRenewCookbookRunnerBase):
    """Runner for CheckExpiration."""

    def __init__(
        self,
        common_opts: CommonOpts,
        duration: int,
        output: ReportFormat,
        spicerack: Spicerack,
    ):
        """Init"""
        super().__init__(spicerack=spicerack, common_opts=common_opts)
        self.duration = duration
        self.output = output

    @property
    def runtime_description(self) -> str:
        """Return a nicely formatted string that represents the cookbook action."""
        return f"for certificates expiring in less than {self.duration} days"

    def run(self) -> int:
        """Main entry point"""
        try:
            report = check_expiration(api=self.get_kubernetes_api(), threshold_days=self.duration)
        except CertRenewError as error:
            LOGGER.error("Failed checking the certificates expiration: %s", error)
            print(f"failed checking the certificates expiration: {error}", file=sys.stderr)
            return 1

        if report.is_empty():
            LOGGER.info("No certificates expiring in less than %d days", self.duration)
            return 0

        print(format_report(report, self.output))
        return 0
