"""Kubernetes related libraries."""
