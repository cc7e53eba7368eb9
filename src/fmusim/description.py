"""
Reading ``modelDescription.xml`` into plain dataclasses.

Only the parts of the FMI 2.0 description that the driver consumes are
kept: model identity, the capability blocks, the default experiment, the
variable table and the list of state derivatives.
"""

from __future__ import annotations

import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from xml.etree import ElementTree

from .errors import LoadError, ValidationError
from .fmi2 import Fmi2Type

logger = logging.getLogger(__name__)

VARIABLE_TYPES = ("Real", "Integer", "Boolean", "String", "Enumeration")


@dataclass
class ModelExchange:
    model_identifier: str
    needs_execution_tool: bool = False
    completed_integrator_step_not_needed: bool = False
    can_be_instantiated_only_once_per_process: bool = False
    can_not_use_memory_management_functions: bool = False
    can_get_and_set_fmu_state: bool = False
    can_serialize_fmu_state: bool = False
    provides_directional_derivative: bool = False


@dataclass
class CoSimulation:
    model_identifier: str
    needs_execution_tool: bool = False
    can_handle_variable_communication_step_size: bool = False
    can_interpolate_inputs: bool = False
    max_output_derivative_order: int = 0
    can_run_asynchronuously: bool = False
    can_be_instantiated_only_once_per_process: bool = False
    can_not_use_memory_management_functions: bool = False
    can_get_and_set_fmu_state: bool = False
    can_serialize_fmu_state: bool = False
    provides_directional_derivative: bool = False
    fixed_internal_step_size: float | None = None


@dataclass
class DefaultExperiment:
    start_time: float | None = None
    stop_time: float | None = None
    tolerance: float | None = None
    step_size: float | None = None


@dataclass
class ScalarVariable:
    name: str
    value_reference: int
    type: str
    description: str = ""
    causality: str = "local"
    variability: str = "continuous"
    initial: str | None = None
    start: Any = None
    declared_type: str | None = None
    unit: str | None = None
    min: float | None = None
    max: float | None = None
    nominal: float | None = None
    derivative: int | None = None

    @property
    def effective_initial(self) -> str | None:
        """The declared ``initial`` attribute, or its FMI 2.0 default."""
        if self.initial is not None:
            return self.initial
        if self.causality == "input" or self.causality == "independent":
            return None
        if self.variability == "constant" or self.causality == "parameter":
            return "exact"
        return "calculated"

    @property
    def settable_before_initialization(self) -> bool:
        return (
            self.causality == "input"
            or self.effective_initial in ("exact", "approx")
        ) and self.variability != "constant"


@dataclass
class ModelDescription:
    fmi_version: str
    model_name: str
    guid: str
    description: str = ""
    author: str = ""
    version: str = ""
    generation_tool: str = ""
    generation_date_and_time: str = ""
    variable_naming_convention: str = "flat"
    number_of_event_indicators: int = 0
    model_exchange: ModelExchange | None = None
    co_simulation: CoSimulation | None = None
    default_experiment: DefaultExperiment | None = None
    model_variables: list[ScalarVariable] = field(default_factory=list)
    log_categories: list[str] = field(default_factory=list)
    derivatives: list[ScalarVariable] = field(default_factory=list)
    outputs: list[ScalarVariable] = field(default_factory=list)

    @property
    def number_of_continuous_states(self) -> int:
        return len(self.derivatives)

    @property
    def interface_types(self) -> list[Fmi2Type]:
        types: list[Fmi2Type] = []
        if self.model_exchange is not None:
            types.append(Fmi2Type.MODEL_EXCHANGE)
        if self.co_simulation is not None:
            types.append(Fmi2Type.CO_SIMULATION)
        return types

    def model_identifier(self, fmu_type: Fmi2Type) -> str:
        block = (
            self.co_simulation
            if fmu_type == Fmi2Type.CO_SIMULATION
            else self.model_exchange
        )
        if block is None:
            raise ValidationError(
                f"The model does not support {fmu_type.name.lower()}"
            )
        return block.model_identifier

    def variable(self, name: str) -> ScalarVariable:
        for v in self.model_variables:
            if v.name == name:
                return v
        raise ValidationError(f"Unknown variable {name!r}")


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------
def _bool(value: str | None) -> bool:
    return value is not None and value.strip().lower() in ("true", "1")


def _float(value: str | None) -> float | None:
    return float(value) if value is not None else None


def parse_value(type_name: str, text: str | None) -> Any:
    if text is None:
        return None
    if type_name == "Real":
        return float(text)
    if type_name in ("Integer", "Enumeration"):
        return int(text)
    if type_name == "Boolean":
        return _bool(text)
    return text


def coerce_value(type_name: str, value: Any) -> Any:
    """Convert *value* to the Python type of an FMI variable type."""
    if isinstance(value, str) and type_name != "String":
        try:
            return parse_value(type_name, value)
        except ValueError as exc:
            raise ValidationError(
                f"Cannot convert {value!r} to {type_name}"
            ) from exc
    if type_name == "Real":
        return float(value)
    if type_name in ("Integer", "Enumeration"):
        return int(value)
    if type_name == "Boolean":
        return bool(value)
    return str(value)


def _parse_variable(element: ElementTree.Element) -> ScalarVariable:
    for type_name in VARIABLE_TYPES:
        type_element = element.find(type_name)
        if type_element is not None:
            break
    else:
        raise ValidationError(
            f"Variable {element.get('name')!r} has no type element"
        )

    a = element.attrib
    t = type_element.attrib
    derivative = t.get("derivative")
    return ScalarVariable(
        name=a["name"],
        value_reference=int(a["valueReference"]),
        type=type_name,
        description=a.get("description", ""),
        causality=a.get("causality", "local"),
        variability=a.get(
            "variability",
            "continuous" if type_name == "Real" else "discrete",
        ),
        initial=a.get("initial"),
        start=parse_value(type_name, t.get("start")),
        declared_type=t.get("declaredType"),
        unit=t.get("unit"),
        min=_float(t.get("min")),
        max=_float(t.get("max")),
        nominal=_float(t.get("nominal")),
        derivative=int(derivative) if derivative is not None else None,
    )


def _unknowns(
    root: ElementTree.Element, path: str, variables: list[ScalarVariable]
) -> list[ScalarVariable]:
    # ModelStructure indices are 1-based
    return [
        variables[int(u.get("index", "0")) - 1]
        for u in root.findall(f"ModelStructure/{path}/Unknown")
    ]


def parse_model_description(xml: bytes | str) -> ModelDescription:
    """Parse the text of a ``modelDescription.xml`` document."""
    try:
        root = ElementTree.fromstring(xml)
    except ElementTree.ParseError as exc:
        raise LoadError(f"Invalid modelDescription.xml: {exc}") from exc

    a = root.attrib
    fmi_version = a.get("fmiVersion", "")
    if fmi_version not in ("1.0", "2.0") and not fmi_version.startswith("3."):
        raise ValidationError(f"Unsupported FMI version: {fmi_version!r}")

    md = ModelDescription(
        fmi_version=fmi_version,
        model_name=a.get("modelName", ""),
        guid=a.get("guid", a.get("instantiationToken", "")),
        description=a.get("description", ""),
        author=a.get("author", ""),
        version=a.get("version", ""),
        generation_tool=a.get("generationTool", ""),
        generation_date_and_time=a.get("generationDateAndTime", ""),
        variable_naming_convention=a.get("variableNamingConvention", "flat"),
        number_of_event_indicators=int(a.get("numberOfEventIndicators", "0")),
    )

    me = root.find("ModelExchange")
    if me is not None:
        m = me.attrib
        md.model_exchange = ModelExchange(
            model_identifier=m["modelIdentifier"],
            needs_execution_tool=_bool(m.get("needsExecutionTool")),
            completed_integrator_step_not_needed=_bool(
                m.get("completedIntegratorStepNotNeeded")
            ),
            can_be_instantiated_only_once_per_process=_bool(
                m.get("canBeInstantiatedOnlyOncePerProcess")
            ),
            can_not_use_memory_management_functions=_bool(
                m.get("canNotUseMemoryManagementFunctions")
            ),
            can_get_and_set_fmu_state=_bool(m.get("canGetAndSetFMUstate")),
            can_serialize_fmu_state=_bool(m.get("canSerializeFMUstate")),
            provides_directional_derivative=_bool(
                m.get("providesDirectionalDerivative")
            ),
        )

    cs = root.find("CoSimulation")
    if cs is not None:
        c = cs.attrib
        md.co_simulation = CoSimulation(
            model_identifier=c["modelIdentifier"],
            needs_execution_tool=_bool(c.get("needsExecutionTool")),
            can_handle_variable_communication_step_size=_bool(
                c.get("canHandleVariableCommunicationStepSize")
            ),
            can_interpolate_inputs=_bool(c.get("canInterpolateInputs")),
            max_output_derivative_order=int(
                c.get("maxOutputDerivativeOrder", "0")
            ),
            can_run_asynchronuously=_bool(c.get("canRunAsynchronuously")),
            can_be_instantiated_only_once_per_process=_bool(
                c.get("canBeInstantiatedOnlyOncePerProcess")
            ),
            can_not_use_memory_management_functions=_bool(
                c.get("canNotUseMemoryManagementFunctions")
            ),
            can_get_and_set_fmu_state=_bool(c.get("canGetAndSetFMUstate")),
            can_serialize_fmu_state=_bool(c.get("canSerializeFMUstate")),
            provides_directional_derivative=_bool(
                c.get("providesDirectionalDerivative")
            ),
            fixed_internal_step_size=_float(c.get("fixedInternalStepSize")),
        )

    de = root.find("DefaultExperiment")
    if de is not None:
        md.default_experiment = DefaultExperiment(
            start_time=_float(de.get("startTime")),
            stop_time=_float(de.get("stopTime")),
            tolerance=_float(de.get("tolerance")),
            step_size=_float(de.get("stepSize")),
        )

    md.log_categories = [
        c.get("name", "") for c in root.findall("LogCategories/Category")
    ]
    md.model_variables = [
        _parse_variable(e) for e in root.findall("ModelVariables/ScalarVariable")
    ]
    try:
        md.derivatives = _unknowns(root, "Derivatives", md.model_variables)
        md.outputs = _unknowns(root, "Outputs", md.model_variables)
    except IndexError as exc:
        raise ValidationError("ModelStructure refers to an unknown variable") from exc

    return md


def read_model_description(path: str | Path) -> ModelDescription:
    """Read the model description of an FMU.

    Args:
        path: An ``.fmu`` archive (read without extracting it), an
            extracted FMU directory or a ``modelDescription.xml`` file.
    """
    path = Path(path)
    try:
        if path.is_dir():
            data = (path / "modelDescription.xml").read_bytes()
        elif path.suffix == ".xml":
            data = path.read_bytes()
        else:
            with zipfile.ZipFile(path) as zf:
                data = zf.read("modelDescription.xml")
    except (OSError, KeyError, zipfile.BadZipFile) as exc:
        raise LoadError(f"Cannot read the model description of {path}: {exc}") from exc

    md = parse_model_description(data)
    logger.debug(
        "Read model description of %s (FMI %s, %d variables)",
        md.model_name,
        md.fmi_version,
        len(md.model_variables),
    )
    return md
