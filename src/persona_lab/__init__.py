"""Persona Lab - simulate synthetic personas through UX flows and aggregate usability findings."""

from importlib.metadata import PackageNotFoundError, version

from persona_lab.schemas import Episode, Finding, Flow, Persona, ReportJson, Run, RunConfig, StepTrace

__all__ = ["Episode", "Finding", "Flow", "Persona", "ReportJson", "Run", "RunConfig", "StepTrace"]

try:
    __version__ = version("persona-lab")
except PackageNotFoundError:
    __version__ = "0.0.0"
