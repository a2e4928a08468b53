"""
CrmValue: a single instruction telling the CRM how to write one field.
"""

from typing import Any

MODE_REPLACE = "replace"
MODE_APPEND = "append"
MODE_REPLACE_EMPTY = "replaceEmpty"
MODE_ADD_IF_NEW = "addIfNew"

VALID_MODES = (MODE_REPLACE, MODE_APPEND, MODE_REPLACE_EMPTY, MODE_ADD_IF_NEW)


class CrmValue:
    """
    Value for a CRM field together with its write mode.

    - replace: overwrite the stored value
    - append: add to the stored value (list fields or free text)
    - replaceEmpty: only write if the stored value is empty
    - addIfNew: only write when the record is created
    """

    __slots__ = ("key", "value", "mode")

    def __init__(self, key: str, value: Any, mode: str = MODE_REPLACE):
        if mode not in VALID_MODES:
            raise ValueError(f"Invalid mode: {mode}")
        self.key = key
        self.value = value
        self.mode = mode

    def to_dict(self) -> dict:
        return {"value": self.value, "mode": self.mode}

    def __eq__(self, other):
        if not isinstance(other, CrmValue):
            return NotImplemented
        return (self.key, self.value, self.mode) == (other.key, other.value, other.mode)

    def __hash__(self):
        return hash((self.key, repr(self.value), self.mode))

    def __repr__(self):
        return f"CrmValue({self.key!r}, {self.value!r}, {self.mode!r})"
