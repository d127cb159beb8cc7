"""Command-line entry points: ``lms`` for operators and ``lms-install`` for provisioning."""
