"""Clinical knowledge base: immutable configuration tables for the pipeline.

Pattern libraries, synonym groups, functional score scales, prophylaxis
expectations, anticoagulant bleeding risks, protocol checklists and response keyword buckets. Every
component receives a ClinicalKnowledgeBase instance instead of reading
module globals, so tests can swap in small fixtures.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from clinical_timeline.schemas.base import (
    EntityCategory,
    Importance,
    PathologyType,
    ResponseClassification,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PatternSpec:
    """One entry of a category pattern library.

    Keyword patterns are matched case-insensitively on word boundaries.
    Regex patterns may define a ``name`` group (mention name) and a
    ``value`` group (numeric value for functional scores).
    """

    category: EntityCategory
    pattern: str
    is_regex: bool = False
    confidence: float = 0.8
    label: str | None = None
    scale: str | None = None
    pathologies: frozenset[PathologyType] = frozenset()

    def applies_to(self, pathology: PathologyType | None) -> bool:
        """Check whether this pattern is scanned for a pathology hint."""
        if pathology is None or not self.pathologies:
            return True
        return pathology in self.pathologies


@dataclass(frozen=True)
class ScoreScale:
    """A functional score scale with its range and better direction."""

    key: str
    name: str
    minimum: float
    maximum: float
    higher_is_better: bool
    grades: Mapping[str, float] = field(default_factory=dict)

    @property
    def span(self) -> float:
        return self.maximum - self.minimum

    def parse_value(self, raw: str) -> float | None:
        """Parse a raw token (digit or letter grade) into a scale value."""
        token = raw.strip().upper()
        if token in self.grades:
            return self.grades[token]
        try:
            value = float(token)
        except ValueError:
            return None
        if value < self.minimum or value > self.maximum:
            return None
        return value

    def normalize(self, value: float) -> float:
        """Map a raw value to 0-100 where higher means better function."""
        if self.span <= 0:
            return 0.0
        if self.higher_is_better:
            normalized = (value - self.minimum) / self.span * 100
        else:
            normalized = (self.maximum - value) / self.span * 100
        return max(0.0, min(100.0, normalized))


@dataclass(frozen=True)
class ProphylaxisRule:
    """A prophylactic agent and the complication it is expected to prevent."""

    agent: str
    expected_complication: str
    window_days: int = 21
    failure_classification: ResponseClassification = ResponseClassification.WORSENED


@dataclass(frozen=True)
class AnticoagulationRule:
    """An antithrombotic agent and the hemorrhagic complications it risks."""

    agent: str
    hemorrhage_terms: tuple[str, ...]
    window_days: int = 21


@dataclass(frozen=True)
class ProtocolItem:
    """One item of a pathology protocol-compliance checklist."""

    protocol: str
    agent: str
    category: EntityCategory
    expected: str
    importance: Importance
    duration_days: int | None = None


@dataclass(frozen=True)
class ClinicalKnowledgeBase:
    """Immutable bundle of every configuration table used by the core."""

    patterns: tuple[PatternSpec, ...]
    synonyms: Mapping[EntityCategory, Mapping[str, tuple[str, ...]]]
    score_scales: Mapping[str, ScoreScale]
    prophylaxis_rules: tuple[ProphylaxisRule, ...]
    anticoagulation_rules: tuple[AnticoagulationRule, ...]
    protocols: Mapping[PathologyType, tuple[ProtocolItem, ...]]
    response_keywords: Mapping[ResponseClassification, tuple[str, ...]]

    def synonym_groups(self, category: EntityCategory | None) -> Mapping[str, tuple[str, ...]]:
        if category is None:
            return MappingProxyType({})
        return self.synonyms.get(category, MappingProxyType({}))

    def get_stats(self) -> dict[str, int]:
        return {
            "pattern_count": len(self.patterns),
            "synonym_groups": sum(len(groups) for groups in self.synonyms.values()),
            "score_scales": len(self.score_scales),
            "protocol_pathologies": len(self.protocols),
        }


# ============================================================================
# Pattern Libraries
# ============================================================================


def _keywords(
    category: EntityCategory,
    terms: list[str],
    confidence: float = 0.8,
    pathologies: tuple[PathologyType, ...] = (),
) -> list[PatternSpec]:
    return [
        PatternSpec(
            category=category,
            pattern=term,
            confidence=confidence,
            pathologies=frozenset(pathologies),
        )
        for term in terms
    ]


PROCEDURE_PATTERNS = (
    _keywords(
        EntityCategory.PROCEDURE,
        [
            "craniotomy", "pterional craniotomy", "craniectomy",
            "decompressive craniectomy", "hemicraniectomy", "cranioplasty",
            "evd placement", "evd", "external ventricular drain", "ventriculostomy",
            "lumbar drain", "vp shunt", "ventriculoperitoneal shunt",
            "shunt placement", "tracheostomy", "peg placement",
            "icp monitor placement",
        ],
        confidence=0.85,
    )
    + _keywords(
        EntityCategory.PROCEDURE,
        [
            "coiling", "endovascular coiling", "coil embolization",
            "aneurysm coiling", "clipping", "aneurysm clipping",
            "microsurgical clipping", "surgical clipping", "embolization",
        ],
        confidence=0.9,
        pathologies=(PathologyType.SAH,),
    )
    + _keywords(
        EntityCategory.PROCEDURE,
        [
            "resection", "tumor resection", "gross total resection",
            "subtotal resection", "biopsy", "stereotactic biopsy", "debulking",
        ],
        confidence=0.85,
        pathologies=(PathologyType.TUMORS, PathologyType.METASTASES),
    )
    + _keywords(
        EntityCategory.PROCEDURE,
        ["laminectomy", "discectomy", "acdf", "spinal fusion", "posterior lumbar fusion"],
        confidence=0.85,
        pathologies=(PathologyType.SPINE,),
    )
    + _keywords(
        EntityCategory.PROCEDURE,
        ["burr hole", "burr hole evacuation", "subdural drain"],
        confidence=0.85,
        pathologies=(PathologyType.TBI_CSDH,),
    )
)

MEDICATION_PATTERNS = _keywords(
    EntityCategory.MEDICATION,
    [
        "nimodipine", "nimotop", "levetiracetam", "keppra", "phenytoin",
        "fosphenytoin", "dilantin", "dexamethasone", "decadron", "mannitol",
        "aspirin", "clopidogrel", "plavix", "warfarin", "coumadin", "apixaban",
        "eliquis", "rivaroxaban", "heparin", "subcutaneous heparin",
        "enoxaparin", "lovenox", "labetalol", "nicardipine", "metoprolol",
        "atorvastatin", "pantoprazole", "phenylephrine", "norepinephrine", "levophed",
        "vancomycin", "cefazolin", "milrinone",
    ],
    confidence=0.85,
)

INTERVENTION_PATTERNS = _keywords(
    EntityCategory.INTERVENTION,
    [
        "induced hypertension", "hypertensive therapy", "triple h therapy",
        "triple-h therapy", "intra-arterial verapamil", "balloon angioplasty",
        "hypertonic saline", "intubation", "mechanical ventilation",
        "blood transfusion", "csf drainage",
    ],
    confidence=0.8,
)

COMPLICATION_PATTERNS = _keywords(
    EntityCategory.COMPLICATION,
    [
        "vasospasm", "cerebral vasospasm", "delayed cerebral ischemia", "dci",
        "hydrocephalus", "acute hydrocephalus", "seizure", "seizures",
        "rebleed", "rebleeding", "hematoma expansion", "postoperative hemorrhage",
        "postoperative hematoma", "hemorrhagic conversion", "new hemorrhage",
        "stroke", "ischemic stroke", "infarct", "infarction", "cerebral edema",
        "hyponatremia", "siadh", "cerebral salt wasting", "dvt",
        "deep vein thrombosis", "pulmonary embolism", "meningitis",
        "ventriculitis", "wound infection", "pneumonia", "urinary tract infection",
        "uti", "sepsis", "csf leak", "shunt malfunction",
    ],
    confidence=0.85,
)

IMAGING_PATTERNS = _keywords(
    EntityCategory.IMAGING,
    [
        "head ct", "ct head", "ct angiogram", "cta", "ct", "mri", "mra",
        "cerebral angiogram", "angiography", "dsa", "transcranial doppler", "tcd",
    ],
    confidence=0.75,
)

CLINICAL_STATUS_PATTERNS = _keywords(
    EntityCategory.CLINICAL_STATUS,
    [
        "resolved", "resolution", "improved", "improving", "improvement",
        "recovered", "worsened", "worsening", "deteriorated", "deterioration",
        "declined", "stable", "remained stable", "unchanged", "no change",
        "partially improved", "partial improvement", "partially resolved",
        "persistent", "neurologically intact",
    ],
    confidence=0.7,
)

_SCORE_SEPARATOR = r"\s*(?:of|was|is|:|=)?\s*"

FUNCTIONAL_SCORE_PATTERNS = [
    PatternSpec(
        category=EntityCategory.FUNCTIONAL_SCORE,
        pattern=r"\b(?:KPS|Karnofsky(?:\s+performance\s+(?:status|score))?)" + _SCORE_SEPARATOR + r"(?P<value>\d{1,3})\b",
        is_regex=True,
        confidence=0.9,
        label="KPS",
        scale="kps",
    ),
    PatternSpec(
        category=EntityCategory.FUNCTIONAL_SCORE,
        pattern=r"\bECOG(?:\s+(?:PS|performance\s+status))?" + _SCORE_SEPARATOR + r"(?P<value>[0-5])\b",
        is_regex=True,
        confidence=0.9,
        label="ECOG",
        scale="ecog",
    ),
    PatternSpec(
        category=EntityCategory.FUNCTIONAL_SCORE,
        pattern=r"\b(?:mRS|modified\s+Rankin(?:\s+scale)?(?:\s+score)?)" + _SCORE_SEPARATOR + r"(?P<value>[0-6])\b",
        is_regex=True,
        confidence=0.9,
        label="mRS",
        scale="mrs",
    ),
    PatternSpec(
        category=EntityCategory.FUNCTIONAL_SCORE,
        pattern=r"\b(?:GCS|Glasgow\s+coma\s+(?:scale|score))" + _SCORE_SEPARATOR + r"(?P<value>1[0-5]|[3-9])\b",
        is_regex=True,
        confidence=0.9,
        label="GCS",
        scale="gcs",
    ),
    PatternSpec(
        category=EntityCategory.FUNCTIONAL_SCORE,
        pattern=r"\bNIHSS" + _SCORE_SEPARATOR + r"(?P<value>\d{1,2})\b",
        is_regex=True,
        confidence=0.9,
        label="NIHSS",
        scale="nihss",
    ),
    PatternSpec(
        category=EntityCategory.FUNCTIONAL_SCORE,
        pattern=r"\bASIA(?:\s+(?:grade|impairment\s+scale))?" + _SCORE_SEPARATOR + r"(?P<value>[A-E])\b",
        is_regex=True,
        confidence=0.85,
        label="ASIA",
        scale="asia",
        pathologies=frozenset({PathologyType.SPINE}),
    ),
]


# ============================================================================
# Synonym Groups (canonical name -> synonyms)
# ============================================================================

PROCEDURE_SYNONYMS = {
    "aneurysm coiling": (
        "coiling", "coil embolization", "endovascular coiling",
        "aneurysm coiling", "coils", "embolization of aneurysm",
    ),
    "aneurysm clipping": (
        "clipping", "aneurysm clipping", "microsurgical clipping",
        "surgical clipping", "clip ligation",
    ),
    "craniotomy": ("craniotomy", "open craniotomy", "pterional craniotomy"),
    "craniectomy": ("craniectomy", "decompressive craniectomy", "hemicraniectomy"),
    "EVD placement": (
        "evd", "evd placement", "external ventricular drain",
        "ventriculostomy", "evd insertion",
    ),
    "lumbar drain": ("lumbar drain", "lumbar drainage"),
    "VP shunt": ("vp shunt", "ventriculoperitoneal shunt", "shunt placement"),
    "tumor resection": (
        "resection", "tumor resection", "gross total resection",
        "subtotal resection", "debulking",
    ),
    "biopsy": ("biopsy", "brain biopsy", "stereotactic biopsy"),
    "embolization": ("embolization", "endovascular embolization"),
    "burr hole evacuation": ("burr hole", "burr hole evacuation"),
}

MEDICATION_SYNONYMS = {
    "aspirin": ("aspirin", "asa", "acetylsalicylic acid"),
    "clopidogrel": ("clopidogrel", "plavix"),
    "warfarin": ("warfarin", "coumadin"),
    "apixaban": ("apixaban", "eliquis"),
    "levetiracetam": ("levetiracetam", "keppra"),
    "phenytoin": ("phenytoin", "dilantin", "fosphenytoin"),
    "dexamethasone": ("dexamethasone", "decadron"),
    "nimodipine": ("nimodipine", "nimotop"),
    "heparin": ("heparin", "subcutaneous heparin"),
    "enoxaparin": ("enoxaparin", "lovenox"),
    "norepinephrine": ("norepinephrine", "levophed"),
}

INTERVENTION_SYNONYMS = {
    "induced hypertension": (
        "induced hypertension", "hypertensive therapy",
        "triple h therapy", "triple-h therapy",
    ),
    "mechanical ventilation": ("intubation", "mechanical ventilation"),
}

COMPLICATION_SYNONYMS = {
    "vasospasm": ("vasospasm", "cerebral vasospasm", "delayed cerebral ischemia", "dci"),
    "hydrocephalus": ("hydrocephalus", "acute hydrocephalus", "ventriculomegaly"),
    "seizure": ("seizure", "seizures"),
    "rebleeding": ("rebleed", "rebleeding"),
    "stroke": ("stroke", "ischemic stroke", "infarct", "infarction"),
    "deep vein thrombosis": ("dvt", "deep vein thrombosis"),
    "urinary tract infection": ("uti", "urinary tract infection"),
    "hyponatremia": ("hyponatremia", "siadh", "cerebral salt wasting"),
}

IMAGING_SYNONYMS = {
    "CT head": ("ct", "head ct", "ct head"),
    "CT angiogram": ("cta", "ct angiogram"),
    "cerebral angiogram": ("cerebral angiogram", "angiography", "dsa"),
    "TCD": ("tcd", "transcranial doppler"),
}

CLINICAL_STATUS_SYNONYMS = {
    "improved": ("improved", "improving", "improvement"),
    "resolved": ("resolved", "resolution"),
    "worsened": ("worsened", "worsening", "deteriorated", "deterioration"),
    "partially improved": ("partially improved", "partial improvement", "partially resolved"),
    "stable": ("stable", "remained stable"),
}


# ============================================================================
# Functional Scales, Prophylaxis, Protocols, Response Buckets
# ============================================================================

SCORE_SCALES = {
    "kps": ScoreScale("kps", "Karnofsky Performance Status", 0, 100, True),
    "ecog": ScoreScale("ecog", "ECOG Performance Status", 0, 5, False),
    "mrs": ScoreScale("mrs", "Modified Rankin Scale", 0, 6, False),
    "gcs": ScoreScale("gcs", "Glasgow Coma Scale", 3, 15, True),
    "nihss": ScoreScale("nihss", "NIH Stroke Scale", 0, 42, False),
    "asia": ScoreScale(
        "asia",
        "ASIA Impairment Scale",
        0,
        4,
        True,
        grades=MappingProxyType({"A": 0, "B": 1, "C": 2, "D": 3, "E": 4}),
    ),
}

PROPHYLAXIS_RULES = (
    ProphylaxisRule("nimodipine", "vasospasm", 21),
    ProphylaxisRule("levetiracetam", "seizure", 7, ResponseClassification.PARTIAL),
    ProphylaxisRule("phenytoin", "seizure", 7, ResponseClassification.PARTIAL),
    ProphylaxisRule("heparin", "deep vein thrombosis", 21),
    ProphylaxisRule("enoxaparin", "deep vein thrombosis", 21),
)

HEMORRHAGE_TERMS = (
    "rebleeding", "hematoma expansion", "postoperative hemorrhage",
    "postoperative hematoma", "hemorrhagic conversion", "new hemorrhage",
)

ANTICOAGULATION_RULES = tuple(
    AnticoagulationRule(agent, HEMORRHAGE_TERMS)
    for agent in (
        "aspirin", "clopidogrel", "warfarin", "apixaban", "rivaroxaban",
        "heparin", "enoxaparin",
    )
)

PROTOCOLS = {
    PathologyType.SAH: (
        ProtocolItem(
            protocol="Nimodipine for SAH",
            agent="nimodipine",
            category=EntityCategory.MEDICATION,
            expected="Nimodipine 60mg q4h x 21 days",
            importance=Importance.MANDATORY,
            duration_days=21,
        ),
        ProtocolItem(
            protocol="Seizure prophylaxis",
            agent="levetiracetam",
            category=EntityCategory.MEDICATION,
            expected="Antiepileptic prophylaxis during the acute phase",
            importance=Importance.RECOMMENDED,
        ),
        ProtocolItem(
            protocol="VTE prophylaxis",
            agent="heparin",
            category=EntityCategory.MEDICATION,
            expected="Chemical VTE prophylaxis once the aneurysm is secured",
            importance=Importance.RECOMMENDED,
        ),
    ),
    PathologyType.TBI_CSDH: (
        ProtocolItem(
            protocol="Seizure prophylaxis",
            agent="levetiracetam",
            category=EntityCategory.MEDICATION,
            expected="Levetiracetam x 7 days",
            importance=Importance.MANDATORY,
            duration_days=7,
        ),
        ProtocolItem(
            protocol="VTE prophylaxis",
            agent="heparin",
            category=EntityCategory.MEDICATION,
            expected="Chemical VTE prophylaxis once hemorrhage is stable",
            importance=Importance.RECOMMENDED,
        ),
    ),
    PathologyType.TUMORS: (
        ProtocolItem(
            protocol="Perioperative corticosteroids",
            agent="dexamethasone",
            category=EntityCategory.MEDICATION,
            expected="Dexamethasone for peritumoral edema",
            importance=Importance.RECOMMENDED,
        ),
    ),
    PathologyType.HYDROCEPHALUS: (
        ProtocolItem(
            protocol="CSF diversion",
            agent="EVD placement",
            category=EntityCategory.PROCEDURE,
            expected="Ventricular drainage for symptomatic hydrocephalus",
            importance=Importance.MANDATORY,
        ),
    ),
}

# Checked in declaration order; multi-word buckets come first so that
# "partially improved" is not read as "improved".
RESPONSE_KEYWORDS = {
    ResponseClassification.PARTIAL: (
        "partially improved", "partial improvement", "partially resolved",
        "partial", "some improvement",
    ),
    ResponseClassification.NO_CHANGE: (
        "no change", "unchanged", "no improvement", "persistent",
    ),
    ResponseClassification.WORSENED: (
        "worsened", "worsening", "deteriorated", "deterioration", "declined",
    ),
    ResponseClassification.IMPROVED: (
        "resolved", "resolution", "improved", "improving", "improvement",
        "recovered", "neurologically intact",
    ),
    ResponseClassification.STABLE: ("stable",),
}


def _freeze_groups(groups: dict[str, tuple[str, ...]]) -> Mapping[str, tuple[str, ...]]:
    return MappingProxyType(dict(groups))


def build_default_knowledge_base() -> ClinicalKnowledgeBase:
    """Build the default neurosurgical knowledge base."""
    patterns = tuple(
        PROCEDURE_PATTERNS
        + MEDICATION_PATTERNS
        + INTERVENTION_PATTERNS
        + COMPLICATION_PATTERNS
        + IMAGING_PATTERNS
        + CLINICAL_STATUS_PATTERNS
        + FUNCTIONAL_SCORE_PATTERNS
    )
    knowledge_base = ClinicalKnowledgeBase(
        patterns=patterns,
        synonyms=MappingProxyType({
            EntityCategory.PROCEDURE: _freeze_groups(PROCEDURE_SYNONYMS),
            EntityCategory.MEDICATION: _freeze_groups(MEDICATION_SYNONYMS),
            EntityCategory.INTERVENTION: _freeze_groups(INTERVENTION_SYNONYMS),
            EntityCategory.COMPLICATION: _freeze_groups(COMPLICATION_SYNONYMS),
            EntityCategory.IMAGING: _freeze_groups(IMAGING_SYNONYMS),
            EntityCategory.CLINICAL_STATUS: _freeze_groups(CLINICAL_STATUS_SYNONYMS),
        }),
        score_scales=MappingProxyType(dict(SCORE_SCALES)),
        prophylaxis_rules=PROPHYLAXIS_RULES,
        anticoagulation_rules=ANTICOAGULATION_RULES,
        protocols=MappingProxyType(dict(PROTOCOLS)),
        response_keywords=MappingProxyType(dict(RESPONSE_KEYWORDS)),
    )
    logger.debug(f"Knowledge base built: {knowledge_base.get_stats()}")
    return knowledge_base


# Singleton instance
_knowledge_base: ClinicalKnowledgeBase | None = None


def get_knowledge_base() -> ClinicalKnowledgeBase:
    """Get the singleton default knowledge base."""
    global _knowledge_base
    if _knowledge_base is None:
        _knowledge_base = build_default_knowledge_base()
    return _knowledge_base


def reset_knowledge_base() -> None:
    """Reset the singleton knowledge base (mainly for testing)."""
    global _knowledge_base
    _knowledge_base = None
