"""Automation pipeline: units, matching and run execution."""

from cortex.automations.models import Event, Run, RunStep, Unit

__all__ = ["Event", "Run", "RunStep", "Unit"]
