# site_lens/rules/lumen.py
"""
LumenScan: the first-party rule set.

The rendered DOM is serialised from the page and evaluated with BeautifulSoup,
so the rules are plain Python and run without any script injection.
Results use the same raw shape as the third-party backend
(``{"violations": [...], "incomplete": [...]}``).
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from bs4 import BeautifulSoup
from bs4.element import Tag

from site_lens.browser.page import RenderablePage
from site_lens.rules.profiles import BEST_PRACTICE_TAG, EXPERIMENTAL_TAG
from site_lens.utils import trim_text

__all__ = ("ENGINE_NAME", "LumenRule", "LUMEN_RULES", "select_rules", "evaluate_html", "LumenBackend")

ENGINE_NAME = "LumenScan"

logger = logging.getLogger("SiteLens")

_ALL_WCAG = ("wcag2a", "wcag2aa", "wcag21aa", "wcag22aa")
_WS_RE = re.compile(r"\s+")
_CSS_SPECIAL_RE = re.compile(r"([ #;?%&,.+*~':\"!^$\[\]()=>|/\\@])")


@dataclass(frozen=True, slots=True)
class LumenRule:
    id: str
    impact: str
    profile_tags: Tuple[str, ...]
    wcag_refs: Tuple[str, ...]
    category: str
    summary: str


LUMEN_RULES: Tuple[LumenRule, ...] = (
    LumenRule("html-lang-missing", "serious", _ALL_WCAG + ("section508",), ("wcag311",), "core",
              "Root html element is missing a lang attribute."),
    LumenRule("document-title-missing", "serious", _ALL_WCAG + ("section508",), ("wcag242",), "core",
              "Document title is missing or empty."),
    LumenRule("image-alt-missing", "serious", _ALL_WCAG + ("section508",), ("wcag111",), "core",
              "Image element is missing an alt attribute."),
    LumenRule("form-control-label-missing", "serious", _ALL_WCAG + ("section508",), ("wcag131", "wcag412"), "core",
              "Form control does not have an associated programmatic label."),
    LumenRule("button-name-missing", "serious", _ALL_WCAG + ("section508",), ("wcag412",), "core",
              "Interactive button control is missing an accessible name."),
    LumenRule("link-name-missing", "serious", _ALL_WCAG + ("section508",), ("wcag244", "wcag412"), "core",
              "Link is missing discernible text or an accessible name."),
    LumenRule("iframe-title-missing", "moderate", _ALL_WCAG + ("section508",), ("wcag241", "wcag412"), "core",
              "IFrame element is missing a title or accessible name."),
    LumenRule("duplicate-id", "minor", _ALL_WCAG + ("section508",), ("wcag411",), "core",
              "Duplicate id values were detected on the page."),
    LumenRule("heading-order-skipped", "minor", _ALL_WCAG[1:] + ("section508",), ("wcag131", "wcag246"), "core",
              "Heading levels should not skip intermediate levels."),
    LumenRule("positive-tabindex", "minor", _ALL_WCAG + ("section508",), ("wcag243",), "best-practice",
              "Avoid positive tabindex values to preserve logical keyboard order."),
    LumenRule("video-caption-track-missing", "moderate", _ALL_WCAG, ("wcag122",), "experimental",
              "Video element appears to be missing captions/subtitles tracks."),
)


def select_rules(tags: Iterable[str]) -> Tuple[LumenRule, ...]:
    """Rules whose profile tags intersect ``tags``, minus disabled optional categories."""
    tag_set = set(tags)
    selected = []
    for rule in LUMEN_RULES:
        if not tag_set.intersection(rule.profile_tags):
            continue
        if rule.category == "best-practice" and BEST_PRACTICE_TAG not in tag_set:
            continue
        if rule.category == "experimental" and EXPERIMENTAL_TAG not in tag_set:
            continue
        selected.append(rule)
    return tuple(selected)


# --------------------------------------------------------------------------- #
# DOM helpers                                                                 #
# --------------------------------------------------------------------------- #

Finding = Union[Tag, Tuple[Tag, str]]


def _text(value: Any) -> str:
    return _WS_RE.sub(" ", str(value or "")).strip()


def _attr(el: Tag, name: str) -> str:
    value = el.get(name)
    if isinstance(value, list):
        value = " ".join(value)
    return str(value or "").strip()


def _escape_css(value: str) -> str:
    escaped = _CSS_SPECIAL_RE.sub(r"\\\1", value)
    if escaped[:1].isdigit():
        escaped = f"\\3{escaped[0]} {escaped[1:]}"
    return escaped


def _is_element(node: Any) -> bool:
    return isinstance(node, Tag) and not isinstance(node, BeautifulSoup)


def build_selector(el: Tag) -> str:
    """Short CSS path: id when present, else up to four tag/class/nth-of-type steps."""
    if not _is_element(el):
        return ""
    if _attr(el, "id"):
        return f"#{_escape_css(_attr(el, 'id'))}"
    parts: List[str] = []
    current: Optional[Tag] = el
    depth = 0
    while current is not None and _is_element(current) and depth < 4:
        classes = [_escape_css(c) for c in (current.get("class") or [])[:2] if c]
        class_part = f".{'.'.join(classes)}" if classes else ""
        nth_part = ""
        parent = current.parent
        if _is_element(parent):
            same_tag = parent.find_all(current.name, recursive=False)
            if len(same_tag) > 1:
                index = next(i for i, sibling in enumerate(same_tag) if sibling is current)
                nth_part = f":nth-of-type({index + 1})"
        parts.insert(0, f"{current.name}{class_part}{nth_part}")
        if _is_element(parent) and _attr(parent, "id"):
            parts.insert(0, f"#{_escape_css(_attr(parent, 'id'))}")
            break
        current = parent if _is_element(parent) else None
        depth += 1
    return " > ".join(parts)


class _Document:
    """Parsed DOM plus include/exclude scope resolution."""

    def __init__(self, html: str, include: Sequence[str], exclude: Sequence[str]) -> None:
        self.soup = BeautifulSoup(html or "", "html.parser")
        self.html_el: Tag = self.soup.find("html") or self.soup
        self.roots: List[Tag] = self._unique(
            el for selector in include if selector for el in self._select(self.soup, selector)
        ) or [self.html_el]
        self._excluded = {
            id(el) for selector in exclude if selector for el in self._select(self.soup, selector)
        }

    @staticmethod
    def _select(root: Tag, selector: str) -> List[Tag]:
        try:
            return list(root.select(selector))
        except Exception:  # noqa: BLE001
            logger.debug("Ignoring unsupported selector %r", selector)
            return []

    @staticmethod
    def _unique(elements: Iterable[Tag]) -> List[Tag]:
        seen: Dict[int, Tag] = {}
        for el in elements:
            seen.setdefault(id(el), el)
        return list(seen.values())

    def _is_excluded(self, el: Tag) -> bool:
        if not self._excluded:
            return False
        if id(el) in self._excluded:
            return True
        return any(id(parent) in self._excluded for parent in el.parents)

    def _in_scope(self, el: Tag) -> bool:
        if self._is_excluded(el):
            return False
        if any(root is self.html_el for root in self.roots):
            return True
        ancestors = {id(parent) for parent in el.parents}
        return any(root is el or id(root) in ancestors for root in self.roots)

    def query(self, selector: str) -> List[Tag]:
        found = self._unique(el for root in self.roots for el in self._select(root, selector))
        return [el for el in found if self._in_scope(el)]

    def by_id(self, element_id: str) -> Optional[Tag]:
        return self.soup.find(id=element_id)

    def labelled_by_text(self, el: Tag) -> str:
        texts = []
        for ref in _attr(el, "aria-labelledby").split():
            node = self.by_id(ref)
            if node is not None:
                texts.append(_text(node.get_text(" ")))
        return " ".join(t for t in texts if t).strip()

    def accessible_name(self, el: Tag) -> str:
        aria_label = _attr(el, "aria-label")
        if aria_label:
            return aria_label
        labelled = self.labelled_by_text(el)
        if labelled:
            return labelled
        if el.name == "input" and _attr(el, "type").lower() in ("button", "submit", "reset"):
            value = _attr(el, "value")
            if value:
                return value
        for name in ("alt", "title"):
            value = _attr(el, name)
            if value:
                return value
        return _text(el.get_text(" "))

    def has_programmatic_label(self, el: Tag) -> bool:
        if _attr(el, "aria-label") or self.labelled_by_text(el) or _attr(el, "title"):
            return True
        element_id = _attr(el, "id")
        if element_id:
            for label in self.soup.find_all("label", attrs={"for": element_id}):
                if _text(label.get_text(" ")):
                    return True
        wrapping = el.find_parent("label")
        return bool(wrapping is not None and _text(wrapping.get_text(" ")))


# --------------------------------------------------------------------------- #
# Rules                                                                       #
# --------------------------------------------------------------------------- #


def _html_lang(doc: _Document) -> List[Finding]:
    return [] if _attr(doc.html_el, "lang") else [doc.html_el]


def _document_title(doc: _Document) -> List[Finding]:
    title = doc.soup.find("title")
    return [] if title is not None and _text(title.get_text()) else [doc.html_el]


def _image_alt(doc: _Document) -> List[Finding]:
    out: List[Finding] = []
    for img in doc.query("img"):
        role = _attr(img, "role").lower()
        if _attr(img, "aria-hidden").lower() == "true" or role in ("presentation", "none"):
            continue
        if not img.has_attr("alt"):
            out.append(img)
    return out


def _form_labels(doc: _Document) -> List[Finding]:
    controls = doc.query(
        'input:not([type="hidden"]):not([disabled]), select:not([disabled]), textarea:not([disabled])'
    )
    return [el for el in controls if not doc.has_programmatic_label(el)]


def _button_names(doc: _Document) -> List[Finding]:
    buttons = doc.query(
        'button, input[type="button"], input[type="submit"], input[type="reset"], [role="button"]'
    )
    return [el for el in buttons if doc.accessible_name(el) == ""]


def _link_names(doc: _Document) -> List[Finding]:
    return [el for el in doc.query('a[href], [role="link"]') if doc.accessible_name(el) == ""]


def _iframe_titles(doc: _Document) -> List[Finding]:
    return [el for el in doc.query("iframe") if doc.accessible_name(el) == ""]


def _duplicate_ids(doc: _Document) -> List[Finding]:
    buckets: Dict[str, List[Tag]] = {}
    for el in doc.query("[id]"):
        element_id = _attr(el, "id")
        if element_id:
            buckets.setdefault(element_id, []).append(el)
    out: List[Finding] = []
    for element_id, elements in buckets.items():
        if len(elements) < 2:
            continue
        summary = f'Duplicate id "{element_id}" appears {len(elements)} times on this page.'
        out.extend((el, summary) for el in elements)
    return out


def _heading_order(doc: _Document) -> List[Finding]:
    out: List[Finding] = []
    previous = 0
    for heading in doc.query("h1, h2, h3, h4, h5, h6"):
        level = int(heading.name[1])
        if previous and level > previous + 1:
            out.append((heading, f"Heading level jumped from h{previous} to h{level}."))
        previous = level
    return out


def _positive_tabindex(doc: _Document) -> List[Finding]:
    out: List[Finding] = []
    for el in doc.query("[tabindex]"):
        match = re.match(r"\s*([+-]?\d+)", _attr(el, "tabindex"))
        if match and int(match.group(1)) > 0:
            out.append(el)
    return out


def _video_captions(doc: _Document) -> List[Finding]:
    out: List[Finding] = []
    for video in doc.query("video"):
        tracks = video.find_all("track")
        if not any(_attr(t, "kind").lower() in ("captions", "subtitles") for t in tracks):
            out.append(video)
    return out


_CHECKS: Dict[str, Callable[[_Document], List[Finding]]] = {
    "html-lang-missing": _html_lang,
    "document-title-missing": _document_title,
    "image-alt-missing": _image_alt,
    "form-control-label-missing": _form_labels,
    "button-name-missing": _button_names,
    "link-name-missing": _link_names,
    "iframe-title-missing": _iframe_titles,
    "duplicate-id": _duplicate_ids,
    "heading-order-skipped": _heading_order,
    "positive-tabindex": _positive_tabindex,
    "video-caption-track-missing": _video_captions,
}


def _node(el: Tag, summary: str, impact: str, max_html: int, max_summary: int) -> Dict[str, Any]:
    selector = build_selector(el) if _is_element(el) else "html"
    return {
        "target": [selector] if selector else [],
        "html": trim_text(_WS_RE.sub(" ", str(el)), max_html),
        "failureSummary": trim_text(summary, max_summary),
        "impact": impact,
    }


def evaluate_html(
    html: str,
    rules: Sequence[LumenRule],
    *,
    include: Sequence[str] = (),
    exclude: Sequence[str] = (),
    max_nodes: int = 20,
    max_html: int = 600,
    max_summary: int = 500,
) -> Dict[str, List[Dict[str, Any]]]:
    """Run ``rules`` over serialised HTML. Node lists are sampled to ``max_nodes``."""
    doc = _Document(html, include, exclude)
    violations: List[Dict[str, Any]] = []
    for rule in rules:
        check = _CHECKS.get(rule.id)
        if check is None:
            continue
        findings = check(doc)
        nodes = []
        for finding in findings[:max_nodes]:
            el, summary = finding if isinstance(finding, tuple) else (finding, rule.summary)
            nodes.append(_node(el, summary, rule.impact, max_html, max_summary))
        if not nodes:
            continue
        violations.append(
            {
                "id": rule.id,
                "impact": rule.impact,
                "help": rule.summary,
                "tags": list(dict.fromkeys(rule.profile_tags + rule.wcag_refs)),
                "nodes": nodes,
            }
        )
    return {"violations": violations, "incomplete": []}


class LumenBackend:
    """Rule backend that reads the rendered DOM and evaluates it off the event loop."""

    name = ENGINE_NAME

    def active_rule_count(self, tags: Sequence[str]) -> Optional[int]:
        return len(select_rules(tags))

    async def run(
        self,
        page: RenderablePage,
        *,
        tags: Sequence[str],
        include: Sequence[str],
        exclude: Sequence[str],
        max_nodes: int,
    ) -> Dict[str, List[Dict[str, Any]]]:
        rules = select_rules(tags)
        html = await page.content()
        return await asyncio.to_thread(
            evaluate_html, html, rules, include=include, exclude=exclude, max_nodes=max_nodes
        )
