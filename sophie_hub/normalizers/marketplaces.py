"""
Amazon marketplace helpers.

The alias table is additive: new codes or spellings can be appended without
changing how existing mappings normalize.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence


@dataclass(frozen=True)
class AmazonMarketplace:
    code: str
    name: str
    aliases: Sequence[str] = ()


AMAZON_MARKETPLACES: tuple[AmazonMarketplace, ...] = (
    AmazonMarketplace("US", "United States", ("usa", "united states", "na us")),
    AmazonMarketplace("CA", "Canada", ("canada", "na ca")),
    AmazonMarketplace("MX", "Mexico", ("mexico", "na mx")),
    AmazonMarketplace("BR", "Brazil", ("brazil", "na br")),
    AmazonMarketplace("UK", "United Kingdom", ("united kingdom", "great britain", "gb", "eu uk")),
    AmazonMarketplace("DE", "Germany", ("germany", "deutschland", "eu de")),
    AmazonMarketplace("FR", "France", ("france", "eu fr")),
    AmazonMarketplace("IT", "Italy", ("italy", "eu it")),
    AmazonMarketplace("ES", "Spain", ("spain", "eu es")),
    AmazonMarketplace("NL", "Netherlands", ("netherlands", "holland", "eu nl")),
    AmazonMarketplace("SE", "Sweden", ("sweden", "eu se")),
    AmazonMarketplace("PL", "Poland", ("poland", "eu pl")),
    AmazonMarketplace("BE", "Belgium", ("belgium", "eu be")),
    AmazonMarketplace("IE", "Ireland", ("ireland", "eu ie")),
    AmazonMarketplace("TR", "Turkey", ("turkey", "türkiye")),
    AmazonMarketplace("JP", "Japan", ("japan", "apac jp")),
    AmazonMarketplace("AU", "Australia", ("australia", "apac au")),
    AmazonMarketplace("SG", "Singapore", ("singapore", "apac sg")),
    AmazonMarketplace("IN", "India", ("india", "apac in")),
    AmazonMarketplace("AE", "United Arab Emirates", ("uae", "united arab emirates", "mena ae")),
    AmazonMarketplace("SA", "Saudi Arabia", ("ksa", "saudi arabia", "mena sa")),
    AmazonMarketplace("EG", "Egypt", ("egypt", "mena eg")),
    AmazonMarketplace("ZA", "South Africa", ("south africa", "za")),
)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_SUFFIX_BONUS = 100


def normalize_alias(value: str) -> str:
    """Fold accents, lowercase, and collapse punctuation/whitespace runs to one space."""
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM.sub(" ", stripped.lower()).strip()


def _build_alias_index(marketplaces: Iterable[AmazonMarketplace]) -> Mapping[str, str]:
    index: dict[str, str] = {}
    for marketplace in marketplaces:
        for candidate in (marketplace.code, marketplace.name, *marketplace.aliases):
            normalized = normalize_alias(candidate)
            if normalized:
                index[normalized] = marketplace.code
    return index


MARKETPLACE_BY_CODE: Mapping[str, AmazonMarketplace] = {m.code: m for m in AMAZON_MARKETPLACES}
ALIAS_TO_CODE: Mapping[str, str] = _build_alias_index(AMAZON_MARKETPLACES)


def normalize_marketplace_code(value: str | None) -> str | None:
    if not value:
        return None
    normalized = normalize_alias(value)
    if not normalized:
        return None
    return ALIAS_TO_CODE.get(normalized)


def normalize_marketplace_codes(values: Iterable[str | None]) -> list[str]:
    """Normalize each value, dropping unknowns and duplicates while keeping order."""
    codes: list[str] = []
    seen: set[str] = set()
    for value in values:
        code = normalize_marketplace_code(value)
        if code is None or code in seen:
            continue
        seen.add(code)
        codes.append(code)
    return codes


def infer_marketplace_code_from_text(*values: str | None) -> str | None:
    """
    Infer a marketplace code from free text such as a client id or brand name.

    Each marketplace scores the length of its longest alias found as a whole
    phrase; a trailing token equal to the code (``"brand-us"``) scores higher
    than any alias. Returns ``None`` when nothing matches or the top two
    scores tie.
    """
    source = " ".join(value for value in values if isinstance(value, str) and value.strip())
    if not source:
        return None

    padded = f" {normalize_alias(source)} "
    tokens = padded.split()
    scores: dict[str, int] = {}

    for marketplace in AMAZON_MARKETPLACES:
        score = 0
        for candidate in (marketplace.code, marketplace.name, *marketplace.aliases):
            normalized = normalize_alias(candidate)
            if normalized and f" {normalized} " in padded:
                score = max(score, len(normalized))
        if tokens and tokens[-1] == marketplace.code.lower():
            score = max(score, _SUFFIX_BONUS)
        if score > 0:
            scores[marketplace.code] = score

    if not scores:
        return None
    ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
    if len(ranked) > 1 and ranked[0][1] == ranked[1][1]:
        return None
    return ranked[0][0]


def get_marketplace_by_code(code: str | None) -> AmazonMarketplace | None:
    if not code:
        return None
    return MARKETPLACE_BY_CODE.get(code)
