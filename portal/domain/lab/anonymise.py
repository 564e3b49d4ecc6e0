"""
Anonymisation of parsed lab results.

Everything sent to the external risk scoring model passes through
:func:`anonymise` first. The output carries only allow-listed test
measurements and the sample date; no other field of the input is ever
copied, however deeply it is nested.
"""
from collections.abc import Mapping
from typing import Any, Dict, FrozenSet, List, Optional, Union
import json
import math

from pydantic import BaseModel, ConfigDict, field_validator


# Test names permitted to cross the anonymisation boundary
ALLOWED_TESTS: FrozenSet[str] = frozenset({
    "Cholesterol",
    "HDL",
    "LDL",
    "TSH",
    "Glucose",
    "HbA1c",
    "WBC",
    "RBC",
    "Platelets",
})

TestValue = Union[int, float, str, None]


class AnonymisedTest(BaseModel):
    """A single allow-listed measurement"""
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    value: TestValue = None
    unit: Optional[str] = None
    reference: Optional[str] = None

    @field_validator("name")
    @classmethod
    def name_must_be_allowed(cls, v: str) -> str:
        if v not in ALLOWED_TESTS:
            raise ValueError(f"test name {v!r} is not allow-listed")
        return v


class AnonymisedRecord(BaseModel):
    """
    The only shape allowed to leave the trust boundary toward the scorer.

    ``sample_date`` is left unset (and therefore absent from the payload)
    when the input did not even carry a ``tests`` list.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    tests: List[AnonymisedTest] = []
    sample_date: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_payload(), indent=indent)


def _coerce_name(raw_name: Any) -> str:
    if not raw_name:
        return ""
    return str(raw_name).strip()


def _is_finite(number: Union[int, float]) -> bool:
    # ints beyond float range overflow in isfinite
    try:
        return math.isfinite(number)
    except OverflowError:
        return False


def _coerce_value(value: Any) -> TestValue:
    # bool is an int subclass but never a lab value
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if _is_finite(value) else None
    if isinstance(value, str):
        text = value.strip()
        # int() and float() accept digit separators, lab strings never do
        if not text or "_" in text:
            return value
        try:
            number = int(text)
        except ValueError:
            try:
                number = float(text)
            except ValueError:
                return value
        return number if _is_finite(number) else value
    # Containers could smuggle nested identifiers across the boundary
    return None


def _coerce_text(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if value and _is_finite(value):
            return str(value)
    return None


def anonymise(raw: Any) -> AnonymisedRecord:
    """
    Reduce an untrusted parsed lab record to its allow-listed measurements.

    Never raises. Input without a ``tests`` list yields a record whose
    payload is exactly ``{"tests": []}``. Otherwise the payload is
    ``{"tests": [...], "sample_date": str | None}`` with tests kept in
    input order and anything not allow-listed dropped.
    """
    if not isinstance(raw, Mapping) or not isinstance(raw.get("tests"), list):
        return AnonymisedRecord(tests=[])

    tests: List[AnonymisedTest] = []
    for element in raw["tests"]:
        if not isinstance(element, Mapping):
            continue

        name = _coerce_name(element.get("name"))
        if name not in ALLOWED_TESTS:
            continue

        tests.append(AnonymisedTest(
            name=name,
            value=_coerce_value(element.get("value")),
            unit=_coerce_text(element.get("unit")),
            reference=_coerce_text(element.get("reference")),
        ))

    sample_date = raw.get("sample_date")
    return AnonymisedRecord(
        tests=tests,
        sample_date=sample_date if isinstance(sample_date, str) and sample_date else None,
    )
