"""
Typed field records for every ITP form type.

Each record carries its ``form_type`` tag so a captured form's fields are a
discriminated union over the closed set of inspection categories.
"""
from datetime import date
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

Percentage = Annotated[float, Field(ge=0, le=100)]
NonNegative = Annotated[float, Field(ge=0)]
Celsius = Annotated[float, Field(ge=-20, le=80)]
ShortText = Annotated[str, Field(max_length=500)]
Measurements = Dict[str, float]
References = List[str]  # Photo / certificate URLs or evidence file names


class FormFieldsBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    def to_columns(self) -> dict:
        """Column values for the form type's remote detail table."""
        return self.model_dump(mode="json", exclude={"form_type"})


class EarthworksPreconstructionFields(FormFieldsBase):
    form_type: Literal["earthworks_preconstruction"] = "earthworks_preconstruction"
    approved_plans_available: bool
    start_date_advised: Optional[date] = None
    erosion_control_implemented: bool
    erosion_control_photo: Optional[str] = None
    hold_point_signature: Optional[str] = None
    hold_point_date: Optional[date] = None


class EarthworksSubgradeFields(FormFieldsBase):
    form_type: Literal["earthworks_subgrade"] = "earthworks_subgrade"
    erosion_controls_in_place: bool
    groundwater_control_measures: bool
    compaction_percentage: Optional[Percentage] = None
    surface_tolerances_met: bool
    surface_measurements: Optional[Measurements] = None
    proof_rolling_completed: bool
    proof_rolling_photo: Optional[str] = None
    nata_certificates: References = []


class RoadServicesFields(FormFieldsBase):
    form_type: Literal["road_services"] = "road_services"
    services_backfilled_correctly: bool
    subgrade_prepared: bool
    sub_base_gradings: Optional[Percentage] = None
    sub_base_pi: Optional[NonNegative] = None
    sub_base_cbr: Optional[NonNegative] = None
    kerbing_installed: bool
    kerbing_level_measurements: Optional[Measurements] = None
    kerbing_width_measurements: Optional[Measurements] = None
    nata_certificates: References = []


class BasecourseFields(FormFieldsBase):
    form_type: Literal["basecourse"] = "basecourse"
    kerbing_conformity: bool
    base_material_gradings: Optional[Percentage] = None
    base_material_pi: Optional[NonNegative] = None
    base_material_cbr: Optional[NonNegative] = None
    layer_spread_compacted: bool
    deflection_testing_results: Optional[NonNegative] = None
    nata_certificates: References = []


class AsphaltSealFields(FormFieldsBase):
    form_type: Literal["asphalt_seal"] = "asphalt_seal"
    basecourse_completed: bool
    pavement_surface_condition: bool
    weather_suitable: bool
    temperature: Optional[Celsius] = None
    tack_coat_applied: bool
    thickness_mm: Optional[NonNegative] = None
    manufacturer_certificates: References = []
    weigh_bridge_dockets: References = []


class SignsLinemarkingFields(FormFieldsBase):
    form_type: Literal["signs_linemarking"] = "signs_linemarking"
    seal_completion: bool
    materials_conform: bool
    installation_per_plans: bool
    installation_photos: References = []
    concrete_footings: bool
    strength_test_mpa: Optional[NonNegative] = None
    linemarking_with_traffic_control: bool


class DrainagePreconstructionFields(FormFieldsBase):
    form_type: Literal["drainage_preconstruction"] = "drainage_preconstruction"
    approved_plans_available: bool
    earthworks_completed: bool
    start_date_advised: Optional[date] = None
    materials_comply: bool
    compliance_certificates: References = []
    hold_point_signature: Optional[str] = None
    hold_point_date: Optional[date] = None


class DrainageExcavationFields(FormFieldsBase):
    form_type: Literal["drainage_excavation"] = "drainage_excavation"
    trench_marked_excavated: bool
    trench_depth_m: Optional[Annotated[float, Field(ge=0, le=20)]] = None
    sediment_control: bool
    shoring_deep_trenches: bool
    groundwater_control: bool
    bedding_compacted_pipes_laid: bool
    joint_check_completed: bool
    hold_point_signature: Optional[str] = None
    hold_point_date: Optional[date] = None


class DrainageBackfillFields(FormFieldsBase):
    form_type: Literal["drainage_backfill"] = "drainage_backfill"
    pipelaying_complete: bool
    bulkheads_installed: bool
    backfill_material_gradings: Optional[Percentage] = None
    compaction_completed: bool
    nata_certificates: References = []


class DrainagePitsFields(FormFieldsBase):
    form_type: Literal["drainage_pits"] = "drainage_pits"
    pipelaying_complete: bool
    pits_aligned_installed: bool
    plumb_check_completed: bool
    subsoil_drainage_connected: bool
    pits_poured: bool
    joints_flush: bool
    hold_point_signature: Optional[str] = None
    hold_point_date: Optional[date] = None


class SubsoilDrainageFields(FormFieldsBase):
    form_type: Literal["subsoil_drainage"] = "subsoil_drainage"
    pipelaying_pits_conform: bool
    select_fill_placed: bool
    grate_covers_installed: bool
    subsoil_drains_connected: bool
    grading_percentage: Optional[Percentage] = None
    nata_certificates: References = []
    wae_spreadsheet: References = []


class ConcretePreplacementFields(FormFieldsBase):
    form_type: Literal["concrete_preplacement"] = "concrete_preplacement"
    survey_verification: bool
    formwork_erected: bool
    formwork_measurements: Optional[Measurements] = None
    reinforcement_placed: bool
    cover_spacing_measurements: Optional[Measurements] = None
    embedded_items_prepared: bool
    hold_point_signature: Optional[str] = None
    hold_point_date: Optional[date] = None
    nata_certificates: References = []


class ConcretePlacementFields(FormFieldsBase):
    form_type: Literal["concrete_placement"] = "concrete_placement"
    preplacement_released: bool
    evaporation_rate: Optional[NonNegative] = None  # kg/m2/h
    concrete_slump_mm: Optional[Annotated[float, Field(ge=0, le=300)]] = None
    concrete_temperature: Optional[Celsius] = None
    placement_method: Optional[ShortText] = None
    compaction_achieved: bool
    vibration_checks: Optional[ShortText] = None
    hold_point_signature: Optional[str] = None
    hold_point_date: Optional[date] = None
    test_results: References = []


class ConcreteCuringFields(FormFieldsBase):
    form_type: Literal["concrete_curing"] = "concrete_curing"
    placement_complete: bool
    curing_method_applied: bool
    curing_method_type: Optional[ShortText] = None
    curing_duration_days: Optional[Annotated[int, Field(ge=0, le=365)]] = None
    surface_finish_tolerances: bool
    surface_measurements: Optional[Measurements] = None
    early_loading_tests: Optional[NonNegative] = None
    hold_point_signature: Optional[str] = None
    hold_point_date: Optional[date] = None
    test_certificates_7_28_day: References = []


FormFields = Annotated[
    Union[
        EarthworksPreconstructionFields,
        EarthworksSubgradeFields,
        RoadServicesFields,
        BasecourseFields,
        AsphaltSealFields,
        SignsLinemarkingFields,
        DrainagePreconstructionFields,
        DrainageExcavationFields,
        DrainageBackfillFields,
        DrainagePitsFields,
        SubsoilDrainageFields,
        ConcretePreplacementFields,
        ConcretePlacementFields,
        ConcreteCuringFields,
    ],
    Field(discriminator="form_type"),
]
