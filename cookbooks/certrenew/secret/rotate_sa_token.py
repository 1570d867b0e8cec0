r"""Kubernetes - rotate service account tokens

Deletes the service account token secrets (and the pods mounting them) so the token controller issues new ones.
Rotates all the tokens in the namespace unless a secret name is given.

Usage example:
    cookbook certrenew.secret.rotate_sa_token \
        --namespace kube-system \
        --secret-name default-token-abcde

"""
from __future__ import annotations

import argparse
import logging
import sys

from spicerack import Spicerack
from spicerack.cookbook import CookbookBase

from certrenew_libs.common import CertRenewCookbookRunnerBase, CommonOpts, add_common_opts, with_common_opts
from certrenew_libs.errors import CertRenewError
from certrenew_libs.k8s.sa_tokens import rotate_sa_tokens

LOGGER = logging.getLogger(__name__)


class RotateSaToken(CookbookBase):
    """Rotate the service account tokens of a namespace."""

    title = __doc__

    def argument_parser(self):
        """Parse the command line arguments for this cookbook."""
        parser = super().argument_parser()
        add_common_opts(parser)
        parser.add_argument(
            "--namespace",
            required=True,
            help="Namespace of the service account tokens to rotate.",
        )
        parser.add_argument(
            "--secret-name",
            required=False,
            default=None,
            help="Name of the token secret to rotate, if not passed all the tokens in the namespace are rotated.",
        )
        return parser

    def get_runner(self, args: argparse.Namespace) -> CertRenewCookbookRunnerBase:
        """Get runner"""
        return with_common_opts(
            self.spicerack,
            args,
            RotateSaTokenRunner,
        )(
            spicerack=self.spicerack,
            namespace=args.namespace,
            secret_name=args.secret_name,
        )


class RotateSaTokenRunner(CertRenewCookbookRunnerBase):
    """Runner for RotateSaToken."""

    def __init__(
        self,
        common_opts: CommonOpts,
        namespace: str,
        spicerack: Spicerack,
        secret_name: str | None = None,
    ):
        """Init"""
        super().__init__(spicerack=spicerack, common_opts=common_opts)
        self.namespace = namespace
        self.secret_name = secret_name

    @property
    def runtime_description(self) -> str:
        """Return a nicely formatted string that represents the cookbook action."""
        what = self.secret_name or "all the tokens"
        return f"for {what} in namespace {self.namespace}"

    def run(self) -> int:
        """Main entry point"""
        if self.spicerack.dry_run:
            LOGGER.info("DRY-RUN: would rotate the service account tokens %s, skipping", self.runtime_description)
            return 0

        try:
            rotated = rotate_sa_tokens(
                api=self.get_kubernetes_api(), namespace=self.namespace, secret_name=self.secret_name
            )
        except CertRenewError as error:
            LOGGER.error("Failed rotating service account tokens: %s", error)
            print(f"failed rotating service account tokens: {error}", file=sys.stderr)
            return 1

        self.sal_log(f"rotated service account tokens {', '.join(rotated)} in namespace {self.namespace}")
        return 0
