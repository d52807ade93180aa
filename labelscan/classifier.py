"""
Structural classifier for rendered product pages.

Each of the three predicates is a StructuralRule: a required ancestor -> leaf
chain of CSS markers, a content check on the leaf, and optional exclusion /
fallback clauses. Evaluation is a pure function of the markup.
"""
from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from bs4 import BeautifulSoup
from bs4.element import Tag

logger = logging.getLogger(__name__)


class Verdict(str, enum.Enum):
    YES = "Y"
    NO = "N"
    ERROR = "Error"


# ---------------------------
# Markers
# ---------------------------

REGULATORY_WRAPPER = ".x-regulatory-wrapper"
EEK_CONTAINER = ".vim.x-eek"

PRODUCT_FICHE_VOCABULARY = (
    "produktdatenblatt",
    "product fiche",
    "product information sheet",
    "fiche produit",
    "scheda prodotto",
)

_FAKE_EEK_RE = re.compile(r"EEK\s*[A-G]\+*", re.I)
_RATING_LETTER_RE = re.compile(r"(?<![a-z])[a-g](?![a-z])|a\+{1,3}", re.I)

_DIAGNOSTIC_SELECTORS = {
    "regulatoryWrapper": REGULATORY_WRAPPER,
    "xEek": ".x-eek",
    "vimXEek": EEK_CONTAINER,
    "uxEekIcon": ".ux-eek-icon",
    "eekRating": ".eek__rating",
    "fakeLink": ".fake-link",
    "infotipOverlay": ".infotip__overlay",
    "infotipMask": ".infotip__mask",
}


# ---------------------------
# Leaf content checks
# ---------------------------

def _text(el: Tag) -> str:
    return el.get_text(" ", strip=True) or ""

def is_real_fiche_link(el: Tag) -> bool:
    href = (el.get("href") or "").strip()
    has_valid_href = len(href) > 5 and "javascript:" not in href.lower() and href != "#"
    text = _text(el).lower()
    return has_valid_href and any(word in text for word in PRODUCT_FICHE_VOCABULARY)

def has_rating_content(el: Tag) -> bool:
    rating = el.select_one(".eek__rating")
    return rating is not None and bool(_text(rating))

def is_energy_label_image(el: Tag) -> bool:
    src = (el.get("src") or "").lower()
    alt = (el.get("alt") or "").strip()
    lowered = alt.lower()
    is_energy = "eek" in lowered or "energy" in lowered or bool(_RATING_LETTER_RE.search(alt))
    return "ebayimg" in src and is_energy


# ---------------------------
# Rule model
# ---------------------------

@dataclass(frozen=True)
class Exclusion:
    """Marker under path[scope] whose text matches `pattern` vetoes the predicate."""
    scope: int
    selector: str
    pattern: re.Pattern


@dataclass(frozen=True)
class StructuralRule:
    name: str
    path: Tuple[str, ...]
    accept: Callable[[Tag], bool]
    gate: Tuple[str, ...] = ()
    leaf_scope: Optional[int] = None
    exclusion: Optional[Exclusion] = None
    fallback: Optional[str] = None


@dataclass
class PredicateOutcome:
    present: bool
    reason: str


PRODUCT_FICHE_RULE = StructuralRule(
    name="productFiche",
    path=(REGULATORY_WRAPPER, EEK_CONTAINER, ".x-eek__values.x-eek__product-fiche", ".x-eek__product-link"),
    accept=is_real_fiche_link,
    leaf_scope=1,
)

ENERGY_LABEL_RULE = StructuralRule(
    name="energyLabel",
    path=(REGULATORY_WRAPPER, EEK_CONTAINER, ".x-eek__icon-overlay-wrapper", ".ux-eek-icon", ".eek"),
    accept=has_rating_content,
    exclusion=Exclusion(scope=1, selector=".fake-link", pattern=_FAKE_EEK_RE),
)

# The overlay is positioned outside the wrapper in the page, so only its
# presence is required; the path starts at document level.
MOUSEOVER_RULE = StructuralRule(
    name="mouseoverLabel",
    path=(".infotip__overlay", ".infotip__mask", ".infotip__cell", ".infotip__content", ".ux-image", "img"),
    accept=is_energy_label_image,
    gate=(REGULATORY_WRAPPER,),
    fallback='.infotip__overlay img[src*="ebayimg"]',
)

RULES: Tuple[StructuralRule, ...] = (PRODUCT_FICHE_RULE, ENERGY_LABEL_RULE, MOUSEOVER_RULE)


def _select_under(nodes: Sequence[Tag], selector: str) -> List[Tag]:
    seen: set[int] = set()
    out: List[Tag] = []
    for node in nodes:
        for el in node.select(selector):
            if id(el) not in seen:
                seen.add(id(el))
                out.append(el)
    return out


def evaluate_rule(rule: StructuralRule, doc: Tag) -> PredicateOutcome:
    for sel in rule.gate:
        if doc.select_one(sel) is None:
            return PredicateOutcome(False, f"missing {sel}")

    # levels[i] holds the matches for rule.path[i]
    levels: List[List[Tag]] = []
    nodes: List[Tag] = [doc]
    missing: Optional[str] = None
    for sel in rule.path:
        nodes = _select_under(nodes, sel)
        if not nodes:
            missing = sel
            break
        levels.append(nodes)

    ex = rule.exclusion
    if ex is not None and len(levels) > ex.scope:
        for el in _select_under(levels[ex.scope], ex.selector):
            if ex.pattern.search(_text(el)):
                return PredicateOutcome(False, f"excluded {ex.selector}: {_text(el)[:40]}")

    if missing is None:
        if any(rule.accept(leaf) for leaf in levels[-1]):
            return PredicateOutcome(True, "path")
        reason = f"{rule.path[-1]} failed content check"
    else:
        reason = f"missing {missing}"

    if rule.leaf_scope is not None and len(levels) > rule.leaf_scope:
        for leaf in _select_under(levels[rule.leaf_scope], rule.path[-1]):
            if rule.accept(leaf):
                return PredicateOutcome(True, f"leaf under {rule.path[rule.leaf_scope]}")

    if rule.fallback and doc.select_one(rule.fallback) is not None:
        return PredicateOutcome(True, "fallback")

    return PredicateOutcome(False, reason)


# ---------------------------
# Result
# ---------------------------

@dataclass
class ClassificationResult:
    product_fiche: Verdict
    energy_label: Verdict
    mouseover_label: Verdict
    reasons: Dict[str, str] = field(default_factory=dict)
    diagnostics: Dict[str, object] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def error_result(cls, message: str, diagnostics: Optional[Dict[str, object]] = None) -> "ClassificationResult":
        return cls(Verdict.ERROR, Verdict.ERROR, Verdict.ERROR, diagnostics=diagnostics or {}, error=message)

    @property
    def verdicts(self) -> Tuple[Verdict, Verdict, Verdict]:
        return (self.product_fiche, self.energy_label, self.mouseover_label)

    @property
    def is_error(self) -> bool:
        return any(v is Verdict.ERROR for v in self.verdicts)

    def summary(self) -> str:
        return f"F:{self.product_fiche.value} L:{self.energy_label.value} M:{self.mouseover_label.value}"

    def to_dict(self) -> Dict[str, object]:
        return {
            "productFiche": self.product_fiche.value,
            "energyLabel": self.energy_label.value,
            "mouseoverLabel": self.mouseover_label.value,
        }


def _parse(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "lxml")

def element_counts(doc: Tag) -> Dict[str, int]:
    return {key: len(doc.select(sel)) for key, sel in _DIAGNOSTIC_SELECTORS.items()}


def classify(html: str) -> ClassificationResult:
    """
    Decide the three predicates for one rendered page.
    Never raises: empty or unparsable markup yields an all-Error result.
    """
    if not html or not html.strip():
        return ClassificationResult.error_result("Empty HTML content provided")
    try:
        doc = _parse(html)
        counts = element_counts(doc)
        outcomes = {rule.name: evaluate_rule(rule, doc) for rule in RULES}
    except Exception as e:  # lxml/soupsieve failures on hostile markup
        logger.warning("Classifier failed to parse markup: %s", e)
        return ClassificationResult.error_result(f"Failed to parse page content: {e}")

    diagnostics: Dict[str, object] = {
        "elementCounts": counts,
        "regulatoryWrapperFound": counts["regulatoryWrapper"] > 0,
        "vimEekFound": counts["vimXEek"] > 0,
        "infotipOverlayFound": counts["infotipOverlay"] > 0,
    }

    def verdict(name: str) -> Verdict:
        return Verdict.YES if outcomes[name].present else Verdict.NO

    result = ClassificationResult(
        product_fiche=verdict(PRODUCT_FICHE_RULE.name),
        energy_label=verdict(ENERGY_LABEL_RULE.name),
        mouseover_label=verdict(MOUSEOVER_RULE.name),
        reasons={name: o.reason for name, o in outcomes.items()},
        diagnostics=diagnostics,
    )
    logger.debug("Classified page %s reasons=%s", result.summary(), result.reasons)
    return result


def validate_structure(html: str) -> Dict[str, object]:
    """Pre-flight report on the markup: key element counts and obvious issues."""
    report: Dict[str, object] = {"isValid": True, "issues": [], "elementCounts": {}}
    try:
        doc = _parse(html or "")
    except Exception as e:
        report["isValid"] = False
        report["issues"].append(f"DOM validation error: {e}")
        return report
    if doc.body is None:
        report["isValid"] = False
        report["issues"].append("Invalid DOM structure - no body element")
        return report
    counts = element_counts(doc)
    report["elementCounts"] = counts
    if counts["regulatoryWrapper"] == 0:
        report["issues"].append("No regulatory wrapper found - may not be a marketplace product page")
    return report
