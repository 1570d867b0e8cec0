"""Kubernetes control plane certificate cookbooks."""
