"""
Naming helpers for suggested entity, table and relationship names
"""

import re

_IRREGULAR = {
    "person": "people",
    "child": "children",
    "man": "men",
    "woman": "women",
    "mouse": "mice",
}
_IRREGULAR_SINGULAR = {v: k for k, v in _IRREGULAR.items()}
_UNCOUNTABLE = {"data", "information", "equipment", "news", "series", "species", "metadata"}


def snake_case(value: str) -> str:
    value = re.sub(r"[^0-9A-Za-z]+", "_", value)
    value = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", value)
    return value.strip("_").lower()


def studly_case(value: str) -> str:
    return "".join(part[:1].upper() + part[1:] for part in snake_case(value).split("_") if part)


def camel_case(value: str) -> str:
    studly = studly_case(value)
    return studly[:1].lower() + studly[1:]


def pluralize(word: str) -> str:
    lower = word.lower()
    if not word or lower in _UNCOUNTABLE or lower in _IRREGULAR_SINGULAR:
        return word
    if lower in _IRREGULAR:
        return _IRREGULAR[lower]
    if re.search(r"[^aeiou]y$", lower):
        return word[:-1] + "ies"
    if re.search(r"(s|x|z|ch|sh)$", lower):
        return word + "es"
    return word + "s"


def singularize(word: str) -> str:
    lower = word.lower()
    if not word or lower in _UNCOUNTABLE:
        return word
    if lower in _IRREGULAR_SINGULAR:
        return _IRREGULAR_SINGULAR[lower]
    if lower.endswith("ies") and len(word) > 3:
        return word[:-3] + "y"
    if re.search(r"(ss|x|z|ch|sh)es$", lower):
        return word[:-2]
    if lower.endswith("s") and not lower.endswith("ss"):
        return word[:-1]
    return word


def table_name_for(stem: str) -> str:
    """Plural snake case: "UserProfile" -> "user_profiles" """
    parts = snake_case(stem).split("_")
    parts[-1] = pluralize(singularize(parts[-1]))
    return "_".join(p for p in parts if p)


def entity_name_for(stem: str) -> str:
    """Singular StudlyCase: "user_profiles" -> "UserProfile" """
    parts = snake_case(stem).split("_")
    parts[-1] = singularize(parts[-1])
    return studly_case("_".join(p for p in parts if p))
