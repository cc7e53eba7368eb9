"""Human-readable summary of an FMU."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

from .description import ModelDescription, read_model_description
from .platforms import supported_platforms

DEFAULT_CAUSALITIES = ("input", "output", "independent")


def _format(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return f"{value:g}"
    return str(value)


def format_info(
    description: ModelDescription,
    platforms: Sequence[str] = (),
    causalities: Sequence[str] = DEFAULT_CAUSALITIES,
) -> str:
    fmi_types = []
    if description.model_exchange is not None:
        fmi_types.append("Model Exchange")
    if description.co_simulation is not None:
        fmi_types.append("Co-Simulation")

    lines = [
        "Model Info",
        "",
        f"  FMI Version        {description.fmi_version}",
        f"  FMI Type           {', '.join(fmi_types)}",
        f"  Model Name         {description.model_name}",
        f"  Description        {description.description}",
        f"  Platforms          {', '.join(platforms)}",
        f"  Continuous States  {description.number_of_continuous_states}",
        f"  Event Indicators   {description.number_of_event_indicators}",
        f"  Variables          {len(description.model_variables)}",
        f"  Generation Tool    {description.generation_tool}",
        f"  Generation Date    {description.generation_date_and_time}",
    ]

    experiment = description.default_experiment
    if experiment is not None:
        lines += ["", "Default Experiment", ""]
        for label, value in (
            ("Start Time", experiment.start_time),
            ("Stop Time", experiment.stop_time),
            ("Tolerance", experiment.tolerance),
            ("Step Size", experiment.step_size),
        ):
            if value is not None:
                lines.append(f"  {label:<13} {value:g}")

    lines += [
        "",
        f"Variables ({', '.join(causalities)})",
        "",
        f"  {'Name':<18} {'Causality':<10} {'Start Value':<12} {'Unit':<8} Description",
    ]
    for v in description.model_variables:
        if v.causality not in causalities:
            continue
        name = v.name if len(v.name) <= 18 else "..." + v.name[-15:]
        unit = v.unit if v.type == "Real" else v.declared_type
        lines.append(
            f"  {name:<18} {v.causality:<10} {_format(v.start):<12} "
            f"{unit or '':<8} {v.description}".rstrip()
        )

    return "\n".join(lines) + "\n"


def fmu_info(
    filename: str | Path,
    causalities: Sequence[str] = DEFAULT_CAUSALITIES,
) -> str:
    """Return the info of an FMU as a multi-line string.

    Args:
        filename: An ``.fmu`` archive or an extracted FMU directory.
        causalities: Only variables with these causalities are listed.
    """
    description = read_model_description(filename)
    return format_info(description, supported_platforms(filename), causalities)
