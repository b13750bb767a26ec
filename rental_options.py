"""Catalog of optional rental services and the per-booking selection record."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from typing import Dict, List, Mapping, Optional, Union

PERCENTAGE = "percentage"
FIXED_DAILY = "fixed_daily"
FREE = "free"

CATEGORIES: List[str] = ["Limits", "VIP Services", "Insurance", "Additional", "Delivery"]


class UnknownOptionError(ValueError):
    def __init__(self, keys: List[str]) -> None:
        super().__init__(f"Unknown rental option(s): {', '.join(sorted(keys))}")
        self.keys = keys


@dataclass(frozen=True)
class RentalOption:
    id: str
    label: str
    category: str
    pricing: str
    rate: float = 0.0
    color: Optional[str] = None
    description: str = ""

    @property
    def price_label(self) -> str:
        if self.pricing == PERCENTAGE:
            return f"+{round(self.rate * 100)}%"
        if self.pricing == FIXED_DAILY:
            return f"{self.rate:,.0f} MDL/day".replace(",", " ")
        return self.description or "Free"

    def as_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["price"] = self.price_label
        return data


RENTAL_OPTIONS: List[RentalOption] = [
    RentalOption("unlimitedKm", "Unlimited mileage", "Limits", PERCENTAGE, 0.5, "red"),
    RentalOption("speedLimitIncrease", "Speed limit increase", "Limits", PERCENTAGE, 0.2, "red"),
    RentalOption("personalDriver", "Personal driver", "VIP Services", FIXED_DAILY, 800, "gray"),
    RentalOption("priorityService", "Priority service", "VIP Services", FIXED_DAILY, 1000, "gray"),
    RentalOption("tireInsurance", "Tire insurance", "Insurance", PERCENTAGE, 0.2, "red"),
    RentalOption("childSeat", "Child seat", "Additional", FIXED_DAILY, 100, "gray"),
    RentalOption("simCard", "SIM card with internet", "Additional", FIXED_DAILY, 100, "gray"),
    RentalOption("roadsideAssistance", "Roadside assistance", "Additional", FIXED_DAILY, 500, "gray"),
    RentalOption("airportDelivery", "Airport delivery", "Delivery", FREE, 0, "green"),
    RentalOption("returnAtAddress", "Return at address", "Delivery", FREE, description="Priced separately"),
    RentalOption("pickupAtAddress", "Pickup at address", "Delivery", FREE, description="Priced separately"),
]
OPTIONS_BY_ID: Dict[str, RentalOption] = {option.id: option for option in RENTAL_OPTIONS}


def _truthy(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass(frozen=True)
class OptionsSelection:
    pickupAtAddress: bool = False
    returnAtAddress: bool = False
    unlimitedKm: bool = False
    speedLimitIncrease: bool = False
    personalDriver: bool = False
    priorityService: bool = False
    tireInsurance: bool = False
    childSeat: bool = False
    simCard: bool = False
    airportDelivery: bool = False
    roadsideAssistance: bool = False

    @classmethod
    def from_mapping(
        cls,
        data: Union[Mapping[str, object], str, None],
        reject_unknown: bool = False,
    ) -> "OptionsSelection":
        """Build a selection from a loose mapping or its JSON text.

        Absent keys are False. Unknown keys are dropped unless
        ``reject_unknown`` is set, in which case they raise UnknownOptionError.
        """
        if data is None or data == "":
            return cls()
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as exc:
                raise ValueError("Options must be a JSON object") from exc
        if isinstance(data, (list, tuple, set)):
            data = {key: True for key in data}
        if not isinstance(data, Mapping):
            raise ValueError("Options must be a JSON object")
        known = {f.name for f in fields(cls)}
        unknown = [str(key) for key in data if key not in known]
        if unknown and reject_unknown:
            raise UnknownOptionError(unknown)
        return cls(**{key: _truthy(value) for key, value in data.items() if key in known})

    def selected(self) -> List[str]:
        return [f.name for f in fields(self) if getattr(self, f.name)]

    def selected_options(self) -> List[RentalOption]:
        return [OPTIONS_BY_ID[key] for key in self.selected()]

    def as_dict(self) -> Dict[str, bool]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.as_dict())


def options_by_category() -> Dict[str, List[RentalOption]]:
    grouped: Dict[str, List[RentalOption]] = {category: [] for category in CATEGORIES}
    for option in RENTAL_OPTIONS:
        grouped[option.category].append(option)
    return grouped
