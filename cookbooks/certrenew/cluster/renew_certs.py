r"""Kubernetes - renew the control plane certificates

Renews the control plane certificates that are close to expiration, either in place (running a maintenance pod on
each control plane node, one node at a time) or by rolling out new control plane machines with cluster-api.

Usage example:
    cookbook certrenew.cluster.renew_certs \
        --kubeconfig ~/.kube/target-cluster \
        --expiration-threshold 48h

    cookbook certrenew.cluster.renew_certs \
        --no-renew-in-place \
        --task-id T424242

"""
from __future__ import annotations

import argparse
import logging
import sys

from spicerack import Spicerack
from spicerack.cookbook import CookbookBase

from certrenew_libs.common import (
    CertRenewCookbookRunnerBase,
    CommonOpts,
    add_common_opts,
    parser_type_duration,
    with_common_opts,
)
from certrenew_libs.errors import CertRenewError, ResourcePatchError
from certrenew_libs.k8s.renewal import renew_certificates
from certrenew_libs.k8s.strategy import RenewalStrategyName

LOGGER = logging.getLogger(__name__)

IN_PLACE_SUCCESS_MESSAGE = """
Successfully renewed the certificates of all the control plane nodes.

Monitor the health of kubernetes control plane nodes:
  kubectl get nodes -w
"""

ROLLING_UPDATE_SUCCESS_MESSAGE = """
Successfully triggered rolling update to renew certificates for control plane node using clusterapi.

Run the following commands to monitor the rolling update.

Monitor machine provisioning:
  kubectl get machines -w

Monitor control plane status:
  kubectl get kcp -w

Monitor the health of kubernetes control plane nodes
  kubectl get nodes -w
"""

SUCCESS_MESSAGES = {
    RenewalStrategyName.IN_PLACE: IN_PLACE_SUCCESS_MESSAGE,
    RenewalStrategyName.ROLLING_UPDATE: ROLLING_UPDATE_SUCCESS_MESSAGE,
}


class RenewCerts(CookbookBase):
    """Renew control plane certificates close to expiration and restart control plane components."""

    title = __doc__

    def argument_parser(self):
        """Parse the command line arguments for this cookbook."""
        parser = super().argument_parser()
        add_common_opts(parser)
        parser.add_argument(
            "--expiration-threshold",
            required=False,
            default="24h",
            type=parser_type_duration,
            help="Renew the certificates that expire within this duration (ex. 24h, 1h30m). Default is %(default)s.",
        )
        parser.add_argument(
            "--renew-in-place",
            required=False,
            default=True,
            action=argparse.BooleanOptionalAction,
            help=(
                "Renew the certificates in place on each control plane node, otherwise replace the control plane "
                "machines with a cluster-api rolling update."
            ),
        )
        return parser

    def get_runner(self, args: argparse.Namespace) -> CertRenewCookbookRunnerBase:
        """Get runner"""
        return with_common_opts(
            self.spicerack,
            args,
            RenewCertsRunner,
        )(
            spicerack=self.spicerack,
            expiration_threshold=args.expiration_threshold,
            strategy_name=RenewalStrategyName.from_renew_in_place(args.renew_in_place),
        )


class RenewCertsRunner(CertRenewCookbookRunnerBase):
    """Runner for RenewCerts."""

    def __init__(
        self,
        common_opts: CommonOpts,
        expiration_threshold: str,
        strategy_name: RenewalStrategyName,
        spicerack: Spicerack,
    ):
        """Init"""
        super().__init__(spicerack=spicerack, common_opts=common_opts)
        self.expiration_threshold = expiration_threshold
        self.strategy_name = strategy_name

    @property
    def runtime_description(self) -> str:
        """Return a nicely formatted string that represents the cookbook action."""
        return f"with the {self.strategy_name} strategy (threshold {self.expiration_threshold})"

    def run(self) -> int:
        """Main entry point"""
        if self.spicerack.dry_run:
            LOGGER.info(
                "DRY-RUN: would renew the control plane certificates %s, skipping", self.runtime_description
            )
            return 0

        try:
            outcome = renew_certificates(
                api=self.get_kubernetes_api(),
                strategy_name=self.strategy_name,
                expiration_threshold=self.expiration_threshold,
                config=self.config,
            )
        except CertRenewError as error:
            orphaned = getattr(error.__cause__, "orphaned_template", None)
            if isinstance(error.__cause__, ResourcePatchError) and orphaned:
                self.sal_log(f"left unused machine template {orphaned} after a failed control plane certs renewal")
            LOGGER.error("Failed renewing certificates: %s", error)
            print(f"failed renewing certificates: {error}", file=sys.stderr)
            return 1

        self.sal_log(outcome.summary())
        print(SUCCESS_MESSAGES[self.strategy_name])
        return 0
