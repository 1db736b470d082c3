"""StackPilot - CloudFormation changeset deployment engine.

This package provides tooling for converging named CloudFormation stacks
to template and parameter pairs through reviewed changesets, streaming
progress while a changeset executes.
"""

__version__ = "1.0.0"
__author__ = "StackPilot Team"
