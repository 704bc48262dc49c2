"""
Division catalog: display name -> source division code.

Divisions retired by the source are listed as "(Inactive) <name>". Which
variant a meet used depends on the active-division cutoff date.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Optional

from shared.models.domain import ResultRecord
from shared.models.enums import Gender
from shared.utils.logging import get_logger

from reconciler.errors import ValidationError

logger = get_logger(__name__)

INACTIVE_PREFIX = "(Inactive) "
_WEIGHT = re.compile(r"(\d+(?:\.\d+)?)\s*(\+)?\s*kg", re.IGNORECASE)
_WEIGHT_SUFFIX = re.compile(r"\s+\+?\d+(?:\.\d+)?\+?\s*kg$", re.IGNORECASE)


def gender_of(name: Optional[str]) -> Optional[Gender]:
    """Infer gender from a division or age-category name."""
    if not name:
        return None
    lower = name.lower()
    if "women" in lower:
        return Gender.FEMALE
    if "men" in lower:
        return Gender.MALE
    return None


def weight_of(name: Optional[str]) -> Optional[float]:
    if not name:
        return None
    m = _WEIGHT.search(name)
    return float(m.group(1)) if m else None


def strip_inactive(name: str) -> str:
    return name[len(INACTIVE_PREFIX):] if name.startswith(INACTIVE_PREFIX) else name


def age_category_of(name: str) -> str:
    return _WEIGHT_SUFFIX.sub("", strip_inactive(name)).strip()


@dataclass(frozen=True)
class Division:
    name: str
    code: str

    @property
    def is_inactive(self) -> bool:
        return self.name.startswith(INACTIVE_PREFIX)


class DivisionCatalog:
    """Injected per run; never a module-level singleton."""

    def __init__(self, codes: dict[str, str], active_cutoff: date) -> None:
        self._codes = dict(codes)
        self.active_cutoff = active_cutoff

    @classmethod
    def from_file(cls, path: Path, active_cutoff: date) -> "DivisionCatalog":
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ValidationError(f"cannot load division catalog: {exc}", path=str(path)) from exc
        codes = data.get("division_codes", data) if isinstance(data, dict) else None
        if not isinstance(codes, dict) or not codes:
            raise ValidationError("division catalog is empty or malformed", path=str(path))
        logger.info("division_catalog_loaded", path=str(path), divisions=len(codes))
        return cls({str(k): str(v) for k, v in codes.items()}, active_cutoff)

    def __len__(self) -> int:
        return len(self._codes)

    def __contains__(self, name: str) -> bool:
        return name in self._codes

    def code_for(self, name: str) -> Optional[str]:
        return self._codes.get(name)

    def exact(self, result: ResultRecord) -> list[Division]:
        """The result's own division, the variant in force at its date first."""
        expected = result.division_name
        if not expected:
            return []
        active = Division(expected, self._codes[expected]) if expected in self._codes else None
        inactive_name = INACTIVE_PREFIX + expected
        inactive = Division(inactive_name, self._codes[inactive_name]) if inactive_name in self._codes else None
        ordered = [active, inactive] if result.date >= self.active_cutoff else [inactive, active]
        return [d for d in ordered if d is not None]

    def adjacent(self, age_category: str, weight_class: str) -> list[str]:
        """Active names of the weight classes directly below and above, same age category."""
        target = weight_of(weight_class)
        if target is None:
            return []
        target_plus = "+" in weight_class
        own = f"{age_category} {weight_class}"
        same_category: dict[str, tuple[float, bool]] = {}
        for name in self._codes:
            clean = strip_inactive(name)
            w = weight_of(clean)
            if clean != own and w is not None and age_category_of(clean) == age_category:
                same_category[clean] = (w, "+" in clean)
        ranked = sorted(same_category.items(), key=lambda kv: (kv[1][0], kv[1][1]))
        # insert the target so neighbours are the entries either side of it
        keys = [k for k, _ in ranked]
        values = [v for _, v in ranked]
        pos = 0
        while pos < len(values) and values[pos] < (target, target_plus):
            pos += 1
        out = []
        if pos > 0:
            out.append(keys[pos - 1])
        if pos < len(keys):
            out.append(keys[pos])
        return out

    def prioritized(self, result: ResultRecord, weight_proximity_kg: float = 15.0) -> list[Division]:
        """
        Every division, ordered for a broadened search:
        exact (variant in force first), adjacent weight classes, same gender
        and age, same gender within weight proximity (closest first), other
        same gender, then everything else.
        """
        exact = self.exact(result)
        seen = {d.name for d in exact}
        age_category = (result.age_category or "").strip()
        adjacent_names: list[str] = []
        if result.age_category and result.weight_class:
            adjacent_names = self.adjacent(age_category, result.weight_class)

        adjacent_active = [n for n in adjacent_names if n in self._codes]
        adjacent_inactive = [INACTIVE_PREFIX + n for n in adjacent_names if INACTIVE_PREFIX + n in self._codes]
        adjacent = [Division(n, self._codes[n]) for n in adjacent_active + adjacent_inactive]
        seen.update(d.name for d in adjacent)

        gender = result.gender or gender_of(result.age_category)
        target_weight = weight_of(result.weight_class)
        same_age: list[Division] = []
        near: list[tuple[float, Division]] = []
        same_gender: list[Division] = []
        other: list[Division] = []
        for name, code in self._codes.items():
            if name in seen:
                continue
            div = Division(name, code)
            if gender is not None and gender_of(name) == gender:
                if age_category_of(name) == age_category:
                    same_age.append(div)
                    continue
                w = weight_of(name)
                if w is not None and target_weight is not None and abs(w - target_weight) <= weight_proximity_kg:
                    near.append((abs(w - target_weight), div))
                else:
                    same_gender.append(div)
            else:
                other.append(div)
        near.sort(key=lambda pair: pair[0])
        return exact + adjacent + same_age + [d for _, d in near] + same_gender + other
