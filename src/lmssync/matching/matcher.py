"""
Partner-group name matching.

LMS groups and CRM partner accounts share no identifier, only a
human-typed name, usually with a group prefix ("ptr_Acme Inc") on the LMS
side. Both names are normalized and compared in three tiers:

    exact     normalized names equal                          score 1.0
    prefixed  group name minus prefix == partner name (ci)    score 0.99
    fuzzy     containment ratio or 1 - levenshtein / max_len  score in [0, 1)

The first exact or prefixed hit wins outright; otherwise the best fuzzy
candidate is returned if it reaches min_score.

Pure functions, no DB access. See lmssync.matching.service for the passes
that read and write group links.
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, NamedTuple, Optional, Sequence, Union

DEFAULT_PREFIX = "ptr_"

_PARENTHETICAL = re.compile(r"\s*\(.*?\)\s*")
_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_LEGAL_SUFFIXES = re.compile(
    r"\b(inc|llc|ltd|pty|gmbh|sa|ag|co|corp|corporation|company|limited|incorporated)\b"
)


class MatchType(str, Enum):
    EXACT = "exact"
    PREFIXED = "prefixed"
    FUZZY = "fuzzy"


class PartnerRef(NamedTuple):
    id: Optional[int]
    name: str


@dataclass
class MatchCandidate:
    partner_id: Optional[int]
    partner_name: str
    score: float
    match_type: MatchType
    group_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "groupId": self.group_id,
            "partnerId": self.partner_id,
            "partnerName": self.partner_name,
            "score": round(self.score, 4),
            "matchType": self.match_type.value,
        }


def _strip_prefix(name: str, prefix: str) -> str:
    if prefix and name.lower().startswith(prefix.lower()):
        return name[len(prefix):]
    return name


def normalize_name(name: Optional[str], prefix: str = DEFAULT_PREFIX) -> str:
    """Lowercase, drop prefix, parentheticals, punctuation and legal suffixes.

    >>> normalize_name("ptr_Acme, Inc. (EMEA)")
    'acme'
    """
    if not name:
        return ""
    s = _strip_prefix(name.lower(), prefix.lower())
    s = _PARENTHETICAL.sub(" ", s)
    s = _PUNCTUATION.sub(" ", s)
    s = _WHITESPACE.sub(" ", s)
    s = _LEGAL_SUFFIXES.sub("", s)
    return _WHITESPACE.sub(" ", s).strip()


def levenshtein(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str, prefix: str = DEFAULT_PREFIX) -> float:
    """Similarity of two raw names in [0, 1] after normalization."""
    s1, s2 = normalize_name(a, prefix), normalize_name(b, prefix)
    if not s1 or not s2:
        return 0.0
    if s1 == s2:
        return 1.0
    if s1 in s2 or s2 in s1:
        return min(len(s1), len(s2)) / max(len(s1), len(s2))
    return 1 - levenshtein(s1, s2) / max(len(s1), len(s2))


Candidate = Union[PartnerRef, str]


def _as_ref(candidate: Candidate) -> PartnerRef:
    if isinstance(candidate, PartnerRef):
        return candidate
    return PartnerRef(id=None, name=candidate)


def find_best_match(
    group_name: str,
    candidates: Iterable[Candidate],
    min_score: float = 0.85,
    prefix: str = DEFAULT_PREFIX,
) -> Optional[MatchCandidate]:
    """Return the best partner for group_name, or None below min_score.

    Candidates are PartnerRef tuples or bare names. Among fuzzy candidates
    with equal scores the first one wins.
    """
    normalized_group = normalize_name(group_name, prefix)
    unprefixed = _strip_prefix(group_name or "", prefix).strip().lower()
    best: Optional[PartnerRef] = None
    best_score = 0.0

    for ref in map(_as_ref, candidates):
        if not ref.name:
            continue
        normalized_partner = normalize_name(ref.name, prefix)
        if normalized_group and normalized_group == normalized_partner:
            return MatchCandidate(ref.id, ref.name, 1.0, MatchType.EXACT)
        if unprefixed and unprefixed == ref.name.strip().lower():
            return MatchCandidate(ref.id, ref.name, 0.99, MatchType.PREFIXED)
        score = similarity(group_name, ref.name, prefix)
        if score > best_score:
            best, best_score = ref, score

    if best is not None and best_score >= min_score:
        return MatchCandidate(best.id, best.name, best_score, MatchType.FUZZY)
    return None


def is_system_group(name: Optional[str], denylist: Sequence[str]) -> bool:
    """True for administrative groups that never map to a partner."""
    lowered = (name or "").strip().lower()
    if lowered == "test":
        return True
    return any(term in lowered for term in denylist)


def is_partner_group(name: Optional[str], prefix: str = DEFAULT_PREFIX) -> bool:
    """Whether a group synced from the LMS is worth keeping locally.

    "All Partners" is kept (it feeds membership refresh), "All Users" is not.
    Prefixed groups are always kept; anything else is kept unless its name
    looks administrative.
    """
    lowered = (name or "").strip().lower()
    if lowered == "all users":
        return False
    if lowered == "all partners":
        return True
    if prefix and lowered.startswith(prefix.lower()):
        return True
    return not any(term in lowered for term in ("admin", "internal", "test"))
