"""
Heuristics for telling person mailboxes apart from shared/role inboxes.

Rules are evaluated in priority order:

1. Role aliases (digit suffixes, ``partner*``/``pod*`` prefixes, shared
   keywords) are always shared accounts. Nothing supplied by the directory
   or by an operator can turn them into a person.
2. ``first.last``-shaped local parts are people.
3. Any other single token is shared until proven human: a directory full name
   whose first name matches the token promotes it to a person.
4. A directory full name that reads like an organization keeps or makes the
   account shared.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Literal, Mapping

AccountType = Literal["person", "shared_account"]

PERSON = "person"
SHARED_ACCOUNT = "shared_account"

SHARED_KEYWORDS: tuple[str, ...] = (
    "admin",
    "audit",
    "audits",
    "support",
    "help",
    "hello",
    "info",
    "marketing",
    "sales",
    "finance",
    "billing",
    "accounts",
    "hr",
    "people",
    "careers",
    "jobs",
    "team",
    "office",
    "operations",
    "ops",
    "brand",
    "content",
    "social",
    "socials",
    "media",
    "legal",
    "compliance",
    "customer",
    "customerservice",
    "customer-service",
    "customer_service",
    "noreply",
    "no-reply",
    "notifications",
    "customersuccess",
    "brandmanager",
    "contentmanager",
)

ROLE_PREFIXES: tuple[str, ...] = ("partner", "pod")

# Words that mark a directory display name as a business rather than a human.
ORGANIZATION_NAME_HINTS: frozenset[str] = frozenset(
    {
        "llc",
        "inc",
        "ltd",
        "co",
        "corp",
        "company",
        "group",
        "agency",
        "store",
        "shop",
        "official",
        "amazon",
        "account",
        "inbox",
        "mailbox",
        "service",
        "services",
        "desk",
        "department",
        "dept",
        "partners",
        "society",
    }
)

PERSON_PATTERN = re.compile(r"^[a-z]+([._-][a-z]+)+$")
_SEPARATORS = re.compile(r"[._-]+")
_DIGIT_SUFFIX = re.compile(r"\d+$")
_NAME_TOKEN = re.compile(r"[a-z]+")

_SHARED_TOKENS = frozenset(keyword.lower() for keyword in SHARED_KEYWORDS)
_SHARED_COLLAPSED = frozenset(re.sub(r"[-_]", "", keyword.lower()) for keyword in SHARED_KEYWORDS)


@dataclass(frozen=True)
class DirectoryContext:
    """Optional metadata from the Google Workspace directory record."""

    full_name: str | None = None
    org_unit_path: str | None = None
    title: str | None = None

    @classmethod
    def coerce(cls, value: "DirectoryContext | Mapping[str, object] | None") -> "DirectoryContext | None":
        if value is None or isinstance(value, DirectoryContext):
            return value
        return cls(
            full_name=_as_text(value.get("full_name", value.get("fullName"))),
            org_unit_path=_as_text(value.get("org_unit_path", value.get("orgUnitPath"))),
            title=_as_text(value.get("title")),
        )


@dataclass(frozen=True)
class AccountClassification:
    type: AccountType
    reason: str
    confidence: Literal["high", "medium", "low"]


@dataclass(frozen=True)
class AccountTypeResolution:
    type: AccountType
    reason: str
    overridden: bool


def _as_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def fold_name(value: str) -> str:
    """Lowercase and strip diacritics so ``José`` compares equal to ``jose``."""
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower()


def _local_part(email: str) -> str:
    return (email or "").split("@", 1)[0].strip().lower()


def _role_alias_reason(local_part: str) -> str | None:
    tokens = [token for token in _SEPARATORS.split(local_part) if token]
    collapsed = _SEPARATORS.sub("", local_part)

    if _DIGIT_SUFFIX.search(local_part):
        return "role_alias_digit_suffix"
    if any(collapsed.startswith(prefix) for prefix in ROLE_PREFIXES):
        return "role_alias_prefix"
    # Exact token or collapsed alias only; "chris" must not match "hr".
    if any(token in _SHARED_TOKENS for token in tokens) or collapsed in _SHARED_COLLAPSED:
        return "shared_keyword_match"
    return None


def _name_tokens(full_name: str | None) -> list[str]:
    if not full_name:
        return []
    return _NAME_TOKEN.findall(fold_name(full_name))


def looks_like_organization_name(full_name: str | None) -> bool:
    """
    True when a directory display name reads like a brand or shared inbox.

    A human name is two to four alphabetic words none of which is a shared
    keyword or business hint; anything else (digits, a single word, "Acme
    Support Team") is treated as organizational.
    """
    if not full_name:
        return False
    folded = fold_name(full_name)
    if any(ch.isdigit() for ch in folded):
        return True
    tokens = _name_tokens(full_name)
    if not tokens:
        return True
    if any(token in _SHARED_TOKENS or token in ORGANIZATION_NAME_HINTS for token in tokens):
        return True
    return not 2 <= len(tokens) <= 4


def _matches_human_name(local_part: str, full_name: str | None) -> bool:
    tokens = _name_tokens(full_name)
    if len(tokens) < 2:
        return False
    first, last = tokens[0], tokens[-1]
    candidates = {first, f"{first}{last}", f"{first[0]}{last}"}
    return local_part in candidates


def classify_google_account_email(email: str) -> AccountClassification:
    """Classify an address from its local part alone (rules 1–3 without directory context)."""
    local_part = _local_part(email)
    if not local_part:
        return AccountClassification(SHARED_ACCOUNT, "no_local_part", "low")

    alias_reason = _role_alias_reason(local_part)
    if alias_reason:
        return AccountClassification(SHARED_ACCOUNT, alias_reason, "high")

    if PERSON_PATTERN.match(local_part):
        return AccountClassification(PERSON, "name_like_pattern", "medium")

    return AccountClassification(SHARED_ACCOUNT, "ambiguous_single_token", "low")


def resolve_google_account_type(
    email: str,
    existing_type: str | None = None,
    directory_context: DirectoryContext | Mapping[str, object] | None = None,
) -> AccountTypeResolution:
    """
    Resolve the account type using the stored override and directory metadata.

    ``existing_type`` is an operator's manual choice and wins over every rule
    except a role alias.
    """
    context = DirectoryContext.coerce(directory_context)
    local_part = _local_part(email)
    auto = classify_google_account_email(email)

    if auto.reason.startswith("role_alias") or auto.reason == "shared_keyword_match":
        return AccountTypeResolution(SHARED_ACCOUNT, auto.reason, overridden=False)

    if existing_type in (PERSON, SHARED_ACCOUNT):
        return AccountTypeResolution(existing_type, f"manual_override:{existing_type}", overridden=True)

    full_name = context.full_name if context else None
    if full_name and looks_like_organization_name(full_name):
        return AccountTypeResolution(SHARED_ACCOUNT, "shared_name_hint", overridden=False)

    if auto.reason == "ambiguous_single_token" and _matches_human_name(local_part, full_name):
        return AccountTypeResolution(PERSON, "human_name_email_match", overridden=False)

    return AccountTypeResolution(auto.type, auto.reason, overridden=False)
