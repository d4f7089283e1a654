"""
Form Serializer/Validator.
Checks captured field values against the schema registered for each form type
before anything is queued or transmitted. Pure and synchronous.
"""
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Mapping, Optional, Type

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ..core.exceptions import FieldViolation, UnsupportedFormTypeError, ValidationError
from ..models.form import CapturedForm, EvidenceFile, FormType, InspectionStatus
from ..models import form_fields as ff


@dataclass(frozen=True)
class FormSchema:
    form_type: FormType
    label: str
    model: Type[ff.FormFieldsBase]

    @property
    def table(self) -> str:
        return f"itp_{self.form_type.value}"


FORM_SCHEMAS: Dict[FormType, FormSchema] = {
    s.form_type: s
    for s in [
        FormSchema(FormType.EARTHWORKS_PRECONSTRUCTION,
                   "Earthworks Preconstruction & Erosion/Sediment Control",
                   ff.EarthworksPreconstructionFields),
        FormSchema(FormType.EARTHWORKS_SUBGRADE,
                   "Earthworks Subgrade Preparation & Sub Base",
                   ff.EarthworksSubgradeFields),
        FormSchema(FormType.ROAD_SERVICES,
                   "Road Services Crossings & Kerbing",
                   ff.RoadServicesFields),
        FormSchema(FormType.BASECOURSE,
                   "Basecourse Construction",
                   ff.BasecourseFields),
        FormSchema(FormType.ASPHALT_SEAL,
                   "Asphalt Seal / Bitumen Seal",
                   ff.AsphaltSealFields),
        FormSchema(FormType.SIGNS_LINEMARKING,
                   "Signs, Devices and Linemarking",
                   ff.SignsLinemarkingFields),
        FormSchema(FormType.DRAINAGE_PRECONSTRUCTION,
                   "Drainage Preconstruction",
                   ff.DrainagePreconstructionFields),
        FormSchema(FormType.DRAINAGE_EXCAVATION,
                   "Drainage Excavation & Pipelaying",
                   ff.DrainageExcavationFields),
        FormSchema(FormType.DRAINAGE_BACKFILL,
                   "Drainage Backfill",
                   ff.DrainageBackfillFields),
        FormSchema(FormType.DRAINAGE_PITS,
                   "Drainage Pits / Lintels / Grates",
                   ff.DrainagePitsFields),
        FormSchema(FormType.SUBSOIL_DRAINAGE,
                   "Subsoil Drainage / Pit Grate Covers & Surrounds",
                   ff.SubsoilDrainageFields),
        FormSchema(FormType.CONCRETE_PREPLACEMENT,
                   "Concrete Pre-Placement (Formwork & Reinforcement)",
                   ff.ConcretePreplacementFields),
        FormSchema(FormType.CONCRETE_PLACEMENT,
                   "Concrete Placement & Compaction",
                   ff.ConcretePlacementFields),
        FormSchema(FormType.CONCRETE_CURING,
                   "Concrete Curing & Finishing",
                   ff.ConcreteCuringFields),
    ]
}


class FormHeader(BaseModel):
    """Fields common to every form type."""
    project_id: str = Field(min_length=1)
    organization_id: Optional[str] = None
    inspector_name: str = Field(min_length=1, max_length=200)
    inspection_date: date
    inspection_status: InspectionStatus = InspectionStatus.PENDING
    comments: Optional[str] = Field(default=None, max_length=2000)


def _violations(exc: PydanticValidationError, prefix: str = "") -> List[FieldViolation]:
    out = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"]) or "__root__"
        out.append(FieldViolation(field=f"{prefix}{loc}", reason=err["msg"]))
    return out


def get_schema(form_type) -> FormSchema:
    try:
        return FORM_SCHEMAS[FormType(form_type)]
    except (ValueError, KeyError):
        raise UnsupportedFormTypeError(str(getattr(form_type, "value", form_type)))


def validate_fields(form_type, raw_fields: Mapping) -> ff.FormFieldsBase:
    """Validate type-specific fields. Raises ValidationError listing every violation."""
    schema = get_schema(form_type)
    data = dict(raw_fields or {})
    violations: List[FieldViolation] = []
    supplied = data.pop("form_type", None)
    if supplied is not None and getattr(supplied, "value", supplied) != schema.form_type.value:
        violations.append(FieldViolation(
            "form_fields.form_type", f"does not match form type {schema.form_type.value!r}"
        ))
    data["form_type"] = schema.form_type.value

    validated = None
    try:
        validated = schema.model.model_validate(data)
    except PydanticValidationError as exc:
        violations.extend(_violations(exc, prefix="form_fields."))
    if violations:
        raise ValidationError(violations)
    return validated


def validate_header(raw_header: Mapping) -> FormHeader:
    try:
        return FormHeader.model_validate(dict(raw_header or {}))
    except PydanticValidationError as exc:
        raise ValidationError(_violations(exc))


def build_form(
    form_type,
    header: Mapping,
    fields: Mapping,
    evidence: Optional[Iterable] = None,
) -> CapturedForm:
    """Validate header, fields and evidence together so all violations surface at once."""
    schema = get_schema(form_type)
    violations: List[FieldViolation] = []

    validated_header = None
    validated_fields = None
    files: List[EvidenceFile] = []
    try:
        validated_header = validate_header(header)
    except ValidationError as exc:
        violations.extend(exc.violations)
    try:
        validated_fields = validate_fields(schema.form_type, fields)
    except ValidationError as exc:
        violations.extend(exc.violations)
    for i, item in enumerate(evidence or []):
        try:
            files.append(item if isinstance(item, EvidenceFile) else EvidenceFile.model_validate(item))
        except PydanticValidationError as exc:
            violations.extend(_violations(exc, prefix=f"evidence_files.{i}."))

    if violations:
        raise ValidationError(violations)

    return CapturedForm(
        form_type=schema.form_type,
        form_fields=validated_fields,
        evidence_files=files,
        **validated_header.model_dump(),
    )
