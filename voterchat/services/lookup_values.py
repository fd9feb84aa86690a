"""Coded values used in the voter extracts, for building valid WHERE clauses"""

from typing import Any, Dict, List, Optional

COLUMN_VALUES: Dict[str, Any] = {
    "voter_status": {
        "Active": "A",
        "Inactive": "I",
    },
    "status_reason": ["NCOA", "No Contact", "Returned Mail"],
    "last_party_voted": {
        "D": "Democrat",
        "N": "None",
        "NP": "No Party Preference",
        "R": "Republican",
    },
    "gender": {
        "F": "Female",
        "M": "Male",
        "O": "Other",
    },
}


def list_lookup_keys() -> List[str]:
    return list(COLUMN_VALUES)


def fetch_lookup_values(keys: List[str]) -> List[Optional[Any]]:
    """One entry per key, None for keys without a mapping"""
    return [COLUMN_VALUES.get(key) for key in keys]
