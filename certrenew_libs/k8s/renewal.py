#!/usr/bin/env python3
"""Entry point to renew the control plane certificates with any of the strategies."""
from __future__ import annotations

import logging
from typing import Callable

from certrenew_libs.common import CertRenewConfig, parse_duration
from certrenew_libs.errors import CertRenewError, RenewalError
from certrenew_libs.k8s.in_place import InPlaceRenewal
from certrenew_libs.k8s.kubernetes import KubernetesApi
from certrenew_libs.k8s.rolling_update import RollingUpdateRenewal
from certrenew_libs.k8s.strategy import RenewalOutcome, RenewalStrategy, RenewalStrategyName

LOGGER = logging.getLogger(__name__)

StrategyFactory = Callable[[KubernetesApi, CertRenewConfig], RenewalStrategy]

STRATEGIES: dict[RenewalStrategyName, StrategyFactory] = {
    RenewalStrategyName.IN_PLACE: lambda api, config: InPlaceRenewal(
        api=api,
        poll_policy=config.get_poll_policy(),
        pod_settings=config.get_pod_settings(),
        control_plane_selector=config.control_plane_selector,
    ),
    RenewalStrategyName.ROLLING_UPDATE: lambda api, config: RollingUpdateRenewal(
        api=api, strict=config.strict_control_plane
    ),
}


def get_strategy(
    strategy_name: RenewalStrategyName, api: KubernetesApi, config: CertRenewConfig | None = None
) -> RenewalStrategy:
    """Build the strategy with the given name."""
    return STRATEGIES[strategy_name](api, config or CertRenewConfig())


def renew_certificates(
    api: KubernetesApi,
    strategy_name: RenewalStrategyName,
    expiration_threshold: str,
    config: CertRenewConfig | None = None,
) -> RenewalOutcome:
    """Renew the control plane certificates, there's no retry nor fallback to the other strategy.

    Invalid thresholds raise ConfigError right away, any failure of the strategy is raised as a RenewalError.
    """
    parse_duration(expiration_threshold)
    strategy = get_strategy(strategy_name=strategy_name, api=api, config=config)

    LOGGER.info("Renewing control plane certificates (%s, threshold %s)", strategy_name, expiration_threshold)
    try:
        outcome = strategy.renew(expiration_threshold)
    except CertRenewError as error:
        raise RenewalError(strategy=str(strategy_name), message=str(error)) from error

    LOGGER.info("%s", outcome.summary())
    return outcome
