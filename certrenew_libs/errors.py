#!/usr/bin/env python3
"""Errors shared by the certificate renewal libraries."""
from __future__ import annotations


class CertRenewError(Exception):
    """Parent class for all certificate renewal related errors."""


class ConfigError(CertRenewError):
    """Risen when some configuration or user input is not valid."""


class ResourceLookupError(CertRenewError, LookupError):
    """Risen when a resource can't be read from the cluster."""


class ResourceNotFoundError(ResourceLookupError):
    """Risen when an expected resource does not exist in the cluster."""


class ResourceCreateError(CertRenewError):
    """Risen when the cluster rejects the creation of a resource."""


class ResourcePatchError(CertRenewError):
    """Risen when the cluster rejects a patch to a resource.

    When the patch was meant to reference a freshly created machine template, that template is left behind without
    any reference, its name is kept in `orphaned_template` so it can be cleaned up by hand.
    """

    def __init__(self, message: str, orphaned_template: str | None = None):
        """Init."""
        super().__init__(message)
        self.orphaned_template = orphaned_template


class PollTimeoutError(CertRenewError):
    """Risen when waiting for something ran out of attempts."""

    def __init__(self, what: str, attempts: int, message: str | None = None):
        """Init."""
        super().__init__(message or f"Gave up waiting for {what} after {attempts} attempts")
        self.what = what
        self.attempts = attempts


class CertificateParseError(CertRenewError):
    """Risen when some certificate data can't be decoded."""


class RenewalError(CertRenewError):
    """Risen when a renewal strategy failed, wraps the original error."""

    def __init__(self, strategy: str, message: str):
        """Init."""
        super().__init__(f"{strategy} renewal failed: {message}")
        self.strategy = strategy
