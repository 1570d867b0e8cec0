"""Cluster wide certificate operations."""
