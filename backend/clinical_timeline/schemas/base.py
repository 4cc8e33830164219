"""Base schemas and enums for the Clinical Timeline Engine."""

from enum import Enum


class EntityCategory(str, Enum):
    """Extraction categories for clinical mentions and entities."""

    PROCEDURE = "procedure"
    MEDICATION = "medication"
    INTERVENTION = "intervention"  # Non-operative therapies (induced hypertension, ...)
    COMPLICATION = "complication"
    IMAGING = "imaging"
    FUNCTIONAL_SCORE = "functional_score"
    CLINICAL_STATUS = "clinical_status"  # Improvement / deterioration phrases


class MentionClassification(str, Enum):
    """Whether a mention describes a new event or points back to one."""

    NEW_EVENT = "new_event"
    REFERENCE = "reference"


class OffsetUnit(str, Enum):
    """Unit of a relative day offset."""

    POD = "POD"  # Post-operative day
    HD = "HD"  # Hospital day


class EventCategory(str, Enum):
    """Clinical significance of a timeline event."""

    DIAGNOSTIC = "DIAGNOSTIC"
    THERAPEUTIC = "THERAPEUTIC"
    COMPLICATION = "COMPLICATION"
    OUTCOME = "OUTCOME"


class RelationshipType(str, Enum):
    """Inferred relationships between timeline events."""

    CAUSES = "CAUSES"
    TRIGGERS = "TRIGGERS"
    RESPONDS_TO = "RESPONDS_TO"
    LEADS_TO = "LEADS_TO"
    PREVENTS = "PREVENTS"


class ResponseClassification(str, Enum):
    """Response of a patient to an intervention."""

    IMPROVED = "IMPROVED"
    WORSENED = "WORSENED"
    STABLE = "STABLE"
    NO_CHANGE = "NO_CHANGE"
    PARTIAL = "PARTIAL"


class Importance(str, Enum):
    """Importance of a protocol checklist item."""

    MANDATORY = "MANDATORY"
    RECOMMENDED = "RECOMMENDED"


class TrajectoryPattern(str, Enum):
    """Overall direction of a functional score series."""

    IMPROVING = "IMPROVING"
    DECLINING = "DECLINING"
    STABLE = "STABLE"
    FLUCTUATING = "FLUCTUATING"


class TrendShape(str, Enum):
    """Shape of a normalized functional score series."""

    LINEAR = "LINEAR"
    STEPWISE = "STEPWISE"
    PLATEAU = "PLATEAU"
    U_SHAPED = "U_SHAPED"
    INVERTED_U = "INVERTED_U"


class ChangeRate(str, Enum):
    """Rate of functional change in normalized points per week."""

    RAPID = "RAPID"  # > 2 points/week
    GRADUAL = "GRADUAL"  # 0.5-2 points/week
    SLOW = "SLOW"  # < 0.5 points/week


class PathologyType(str, Enum):
    """Pathology hint supplied by the upstream classifier."""

    SAH = "SAH"
    TUMORS = "TUMORS"
    HYDROCEPHALUS = "HYDROCEPHALUS"
    TBI_CSDH = "TBI_CSDH"
    CSF_LEAK = "CSF_LEAK"
    SPINE = "SPINE"
    SEIZURES = "SEIZURES"
    METASTASES = "METASTASES"


class IssueKind(str, Enum):
    """Kinds of degraded output reported by the pipeline."""

    MALFORMED_INPUT = "malformed_input"
    UNRESOLVED_TEMPORAL_REFERENCE = "unresolved_temporal_reference"
    NO_SIMILARITY_MATCH = "no_similarity_match"
    INSUFFICIENT_DATA = "insufficient_data"
    STAGE_FAILURE = "stage_failure"
