"""Provisioning engine for the containerized LMS stack."""

__version__ = "1.0.0"
