"""
Authority Reference Parsing
===========================

Turns free-text law references ("民法第184條", "消保法第7條", "§213") into
canonical authority IDs of the form "{pcode}-第 N 條", and detects law
mentions in drafted text.
"""

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

from .schemas import Citation, SourceKind

# High-frequency law names -> PCode
PCODE_MAP: Dict[str, str] = {
    "民法": "B0000001",
    "刑法": "C0000001",
    "民事訴訟法": "B0010001",
    "刑事訴訟法": "C0010001",
    "行政訴訟法": "I0020020",
    "公司法": "J0080001",
    "勞動基準法": "N0030001",
    "消費者保護法": "J0170001",
    "個人資料保護法": "I0050021",
    "道路交通管理處罰條例": "K0040012",
    "強制執行法": "B0010004",
    "國家賠償法": "I0020004",
    "行政程序法": "I0020015",
    "土地法": "D0060001",
    "著作權法": "J0070017",
    "專利法": "J0070007",
    "商標法": "J0070001",
    "保險法": "G0390002",
    "證券交易法": "G0400001",
    "家事事件法": "B0010052",
    "稅捐稽徵法": "G0340001",
}

# Common abbreviations -> full law name
ALIAS_MAP: Dict[str, str] = {
    "消保法": "消費者保護法",
    "勞基法": "勞動基準法",
    "個資法": "個人資料保護法",
    "國賠法": "國家賠償法",
    "民訴法": "民事訴訟法",
    "民訴": "民事訴訟法",
    "刑訴法": "刑事訴訟法",
    "刑訴": "刑事訴訟法",
    "行程法": "行政程序法",
    "強執法": "強制執行法",
    "著作權": "著作權法",
    "道交條例": "道路交通管理處罰條例",
    "家事法": "家事事件法",
    "證交法": "證券交易法",
    "稅捐法": "稅捐稽徵法",
}

# Law article mentions inside prose, e.g. 民法第184條, 道路交通安全規則第102條之1
LAW_ARTICLE_REGEX = re.compile(r"([\u4e00-\u9fff]+?(?:法|規則|條例|辦法|細則))第(\d+條(?:之\d+)?)")

# A search query naming one article: "<law name> 第 N 條..."
ARTICLE_QUERY_REGEX = re.compile(r"^(.+?)\s*(第\s*\S+?\s*條.*)$")

_BARE_ARTICLE_REGEX = re.compile(r"^(.+?)\s*(\d[\d-]*)$")
_FULL_ARTICLE = re.compile(r"^第\s*(\d+)\s*條\s*之\s*(\d+)$")
_SIMPLE_ARTICLE = re.compile(r"^第\s*(\d+)\s*條$")


@dataclass(frozen=True)
class LawRef:
    """A parsed law reference"""
    id: str
    law_name: str
    article_no: str

    @property
    def label(self) -> str:
        return f"{self.law_name}{self.article_no}"


def resolve_alias(name: str) -> str:
    """Full law name for an abbreviation; unknown names are returned as-is"""
    return ALIAS_MAP.get(name, name)


def normalize_article_no(raw: str) -> str:
    """
    Normalize an article number to the canonical ID format.

    第184條 -> 第 184 條, 第166條之1 -> 第 166-1 條, §213 -> 第 213 條,
    184 -> 第 184 條. Unrecognized formats are returned stripped.
    """
    s = raw.strip()
    if s.startswith("§"):
        s = s[1:].strip()

    if s.isdigit():
        return f"第 {s} 條"

    match = _FULL_ARTICLE.match(s)
    if match:
        return f"第 {match.group(1)}-{match.group(2)} 條"

    match = _SIMPLE_ARTICLE.match(s)
    if match:
        return f"第 {match.group(1)} 條"

    return s


def build_article_id(law_name: str, article_no: str) -> Optional[str]:
    pcode = PCODE_MAP.get(law_name)
    if not pcode:
        return None
    return f"{pcode}-{article_no}"


def parse_law_ref(raw: str) -> Optional[LawRef]:
    """Parse "民法第184條" / "民法184" into a LawRef (None if the law is unknown)"""
    trimmed = raw.strip()
    if not trimmed:
        return None

    for pattern in (ARTICLE_QUERY_REGEX, _BARE_ARTICLE_REGEX):
        match = pattern.match(trimmed)
        if not match:
            continue
        law_name = resolve_alias(match.group(1).strip())
        article_no = normalize_article_no(match.group(2).strip())
        law_id = build_article_id(law_name, article_no)
        if law_id:
            return LawRef(id=law_id, law_name=law_name, article_no=article_no)

    return None


def _known_law_name(name: str) -> str:
    """Longest suffix of `name` that is a known law (prose often prefixes the name, e.g. 依民法)"""
    for i in range(len(name) - 1):
        candidate = resolve_alias(name[i:])
        if candidate in PCODE_MAP:
            return candidate
    return resolve_alias(name)


def is_article_query(query: str) -> bool:
    return bool(ARTICLE_QUERY_REGEX.match(query.strip()))


def find_law_mentions(text: str) -> List[LawRef]:
    """Law articles mentioned in prose, deduplicated, in order of appearance"""
    refs: Dict[str, LawRef] = {}
    for match in LAW_ARTICLE_REGEX.finditer(text):
        law_name = _known_law_name(match.group(1))
        article_no = normalize_article_no(f"第{match.group(2)}")
        law_id = build_article_id(law_name, article_no)
        if law_id and law_id not in refs:
            refs[law_id] = LawRef(id=law_id, law_name=law_name, article_no=article_no)
    return list(refs.values())


def find_uncited_law_mentions(text: str, citations: Iterable[Citation]) -> List[LawRef]:
    """Mentions of laws in `text` that no law citation points at"""
    cited: Set[str] = {c.source_id for c in citations if c.kind == SourceKind.LAW}
    return [ref for ref in find_law_mentions(text) if ref.id not in cited]


def truncate_law_content(content: str, max_length: int = 600) -> str:
    if len(content) <= max_length:
        return content
    return content[:max_length] + "…"


def repair_quoted_text(quoted: str, source_text: str) -> str:
    """
    Fix replacement characters (U+FFFD) in a quoted span using the source text.

    The quote is turned into a pattern where each replacement character matches
    any single character; the first match in the source replaces the quote.
    """
    if "\ufffd" not in quoted or not source_text:
        return quoted
    pattern = "".join("." if ch == "\ufffd" else re.escape(ch) for ch in quoted)
    match = re.search(pattern, source_text, flags=re.DOTALL)
    return match.group(0) if match else quoted.replace("\ufffd", "")
