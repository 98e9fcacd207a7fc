"""
HTML executor: main-content slicing, table rows, scored text blocks and
scored outbound links.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Tag

from sources.http import decode_content

from .types import ExecutorOutput, ExtractedLinkCandidate, ExtractionDiagnostics, RawRecord

PARSER_NAME = "html-structured-v2"
MAX_RECORDS = 2200
MAX_FALLBACK_LINES = 240
MAX_PREVIEW_LINES = 120
MAX_LINK_CANDIDATES = 40
MIN_LINK_SCORE = 1.2
MAIN_CONTENT_IDS = ("contents-detail", "rs_read_this")
BLOCK_TAGS = ["h2", "h3", "h4", "h5", "h6", "p", "li", "dt", "dd", "caption"]
HEADING = re.compile(r"^h[1-6]$")

NOISE_PATTERNS = [
    re.compile(r"トップページ|サイトマップ|language|色変更|文字サイズ|検索|Google検索|Google Tag", re.IGNORECASE),
    re.compile(r"手続き・届出|施設案内|区政情報|地域活動|防災|子ども|健康・福祉|観光"),
    re.compile(r"プライバシー|cookie|利用規約|アクセシビリティ|読み上げ|閉じる|メニュー", re.IGNORECASE),
]
TARGET_KEYWORDS: Dict[str, List[re.Pattern]] = {
    "schedule": [
        re.compile(r"収集|収集日|曜日|日程|カレンダー|第[1-5]|可燃|不燃|資源|粗大|ごみ|ゴミ"),
        re.compile(r"地区|地域|町名|エリア|燃やすごみ|燃やさないごみ"),
    ],
    "separation": [
        re.compile(r"分別|品目|出し方|処理|備考|回収|資源|ごみ|ゴミ"),
        re.compile(r"燃やすごみ|可燃ごみ|不燃ごみ|粗大ごみ|有害ごみ|陶器・ガラス・金属ごみ"),
    ],
}
_LISTING = re.compile(r"一覧|全容|出し方|品目")
_INLINE_LINK = re.compile(r"https?://|javascript:|mailto:", re.IGNORECASE)
_NAV_ONLY = re.compile(r"^(前へ|次へ|閉じる|ページ|一覧|トップ|トップページ)$")
_HEADER_ONLY = re.compile(r"^(行|品目|分類|出し方|備考|地区|地域|曜日|収集日)+$")
_HEADER_WORD = re.compile(r"行|品目|分類|出し方|備考|地区|曜日|収集")
_GARBAGE_SIGNAL = re.compile(r"ごみ|ゴミ|資源|分別|出し方|収集|品目|一覧|全容|recycle|garbage", re.IGNORECASE)
_SCHEDULE_SIGNAL = re.compile(r"収集|曜日|日程|カレンダー|calendar", re.IGNORECASE)
_SEPARATION_SIGNAL = re.compile(r"分別|品目|出し方|全容|分類")
_UTILITY_SIGNAL = re.compile(r"search|sitemap|privacy|policy|language", re.IGNORECASE)
_WHITESPACE = re.compile(r"[\s　]+")


@dataclass
class HtmlExecutorOptions:
    source_url: Optional[str] = None
    min_block_score: Optional[float] = None
    max_records: int = MAX_RECORDS
    allowed_link_types: Optional[Set[str]] = None


def normalize_space(value: str) -> str:
    return _WHITESPACE.sub(" ", value or "").strip()


def default_min_block_score(target: str) -> float:
    return 1.6 if target == "schedule" else 1.8


def is_likely_noise_text(text: str) -> bool:
    normalized = normalize_space(text)
    if len(normalized) <= 1:
        return True
    if any(pattern.search(normalized) for pattern in NOISE_PATTERNS):
        return True
    return bool(_NAV_ONLY.match(normalized))


def is_header_like_row(cells: List[str]) -> bool:
    if not cells:
        return True
    if _HEADER_ONLY.match("".join(cells).replace(" ", "")):
        return True
    return all(len(cell) <= 8 and _HEADER_WORD.search(cell) for cell in cells)


def is_noise_row(cells: List[str]) -> bool:
    joined = normalize_space(" ".join(cells))
    if len(joined) < 2:
        return True
    if any(pattern.search(joined) for pattern in NOISE_PATTERNS):
        return True
    return bool(_NAV_ONLY.match(joined))


def score_text_block(text: str, target: str) -> float:
    normalized = normalize_space(text)
    score = 0.0
    if 3 <= len(normalized) <= 90:
        score += 0.8
    elif len(normalized) > 180:
        score -= 0.7
    for keyword in TARGET_KEYWORDS[target]:
        if keyword.search(normalized):
            score += 1.6
    if _LISTING.search(normalized):
        score += 0.9
    if _INLINE_LINK.search(normalized):
        score -= 1.6
    if any(pattern.search(normalized) for pattern in NOISE_PATTERNS):
        score -= 2
    return score


def detect_link_type(url: str) -> str:
    try:
        path = (urlparse(url).path or "").lower()
    except ValueError:
        return "unknown"
    if path.endswith(".csv"):
        return "csv"
    if path.endswith((".xlsx", ".xls")):
        return "xlsx"
    if path.endswith(".json") or "/api/" in path:
        return "api"
    if path.endswith(".pdf"):
        return "pdf"
    if path.endswith((".png", ".jpg", ".jpeg", ".webp")):
        return "image"
    if path.endswith((".html", ".htm")) or "." not in path:
        return "html"
    return "unknown"


def score_link(url: str, text: str, target: str, link_type: str) -> ExtractedLinkCandidate:
    signal = f"{text} {url}".lower()
    score = 0.0
    reasons: List[str] = []
    if link_type in ("csv", "xlsx", "api"):
        score += 3
        reasons.append(f"type={link_type}")
    elif link_type == "html":
        score += 2.2
        reasons.append("type=html")
    elif link_type == "pdf":
        score += 1.8
        reasons.append("type=pdf")
    if _GARBAGE_SIGNAL.search(signal):
        score += 2.2
        reasons.append("keyword=garbage")
    if target == "schedule" and _SCHEDULE_SIGNAL.search(signal):
        score += 1.5
        reasons.append("target=schedule")
    if target == "separation" and _SEPARATION_SIGNAL.search(signal):
        score += 1.5
        reasons.append("target=separation")
    if any(pattern.search(signal) for pattern in NOISE_PATTERNS):
        score -= 3
        reasons.append("penalty=noise")
    if _UTILITY_SIGNAL.search(signal):
        score -= 2.4
        reasons.append("penalty=utility")
    return ExtractedLinkCandidate(url=url, text=text, type=link_type, score=max(0.0, score), reasons=reasons)


def _text(node: Tag) -> str:
    return normalize_space(node.get_text(" ", strip=True))


def select_main_content(soup: BeautifulSoup) -> Tag:
    """Known CMS content containers first, then ``<body>``, then the whole document."""
    for tag in soup(["script", "style", "noscript", "svg"]):
        tag.decompose()
    for marker in MAIN_CONTENT_IDS:
        node = soup.find(id=marker)
        if node is not None:
            return node
    if soup.body is not None:
        return soup.body
    return soup


def _map_separation_cells(cells: List[str]) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    start = 0
    if cells and len(cells[0]) <= 2 and "ごみ" not in cells[0] and "ゴミ" not in cells[0]:
        start = 1
    item = cells[start] if len(cells) > start else None
    disposal = cells[start + 1] if len(cells) > start + 1 else None
    notes = " / ".join(cells[start + 2 :]) or None
    return item, disposal, notes


def build_row_fields(cells: List[str], section: Optional[str], target: str) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    parts: List[str] = []
    if section:
        fields["section"] = section
        parts.append(f"[{section}]")

    if target == "separation":
        item, disposal, notes = _map_separation_cells(cells)
        if item:
            fields["品目"] = item
            parts.append(item)
        if disposal:
            fields["出し方"] = disposal
            fields["分類"] = disposal
            parts.append(disposal)
        if notes:
            fields["備考"] = notes
            parts.append(notes)
    else:
        if len(cells) > 0:
            fields["地区"] = cells[0]
        if len(cells) > 1:
            fields["分類"] = cells[1]
        if len(cells) > 2:
            fields["収集曜日"] = cells[2]
            fields["収集日"] = cells[2]

    for index, cell in enumerate(cells):
        fields[f"col{index + 1}"] = cell
        if cell not in parts:
            parts.append(cell)
    fields["line"] = normalize_space(" | ".join(parts))
    return fields


def _nearest_heading(table: Tag) -> Optional[str]:
    for heading in table.find_all_previous(HEADING):
        title = _text(heading)
        if title and not is_likely_noise_text(title):
            return title
    return None


def extract_table_records(content: Tag, target: str) -> Tuple[List[RawRecord], int, int]:
    records: List[RawRecord] = []
    tables = content.find_all("table")
    row_count = 0
    for table in tables:
        section = _nearest_heading(table)
        for row in table.find_all("tr"):
            row_count += 1
            cells = [text for text in (_text(cell) for cell in row.find_all(["th", "td"])) if text]
            if not cells or is_header_like_row(cells) or is_noise_row(cells):
                continue
            records.append(RawRecord(fields=build_row_fields(cells, section, target), row=cells))
    return records, len(tables), row_count


def extract_scored_text_blocks(content: Tag, target: str, min_block_score: float) -> Tuple[List[RawRecord], int, int]:
    records: List[RawRecord] = []
    blocks = content.find_all(BLOCK_TAGS)
    skipped = 0
    for block in blocks:
        text = _text(block)
        if not text:
            skipped += 1
            continue
        score = score_text_block(text, target)
        if score < min_block_score or is_likely_noise_text(text):
            skipped += 1
            continue
        records.append(RawRecord(fields={"line": text, "blockTag": block.name, "blockScore": f"{score:.2f}"}))
    return records, len(blocks), skipped


def fallback_text_records(content: Tag) -> List[RawRecord]:
    lines = [normalize_space(line) for line in content.get_text("\n").splitlines()]
    kept = [line for line in lines if line and not is_likely_noise_text(line)]
    return [RawRecord(fields={"line": line}) for line in kept[:MAX_FALLBACK_LINES]]


def extract_link_candidates(
    content: Tag,
    target: str,
    source_url: Optional[str],
    allowed_link_types: Optional[Set[str]] = None,
) -> List[ExtractedLinkCandidate]:
    """Best score per resolved URL, highest first; relative links need ``source_url``."""
    by_url: Dict[str, ExtractedLinkCandidate] = {}
    for anchor in content.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith("#") or re.match(r"^(javascript:|mailto:|tel:)", href, re.IGNORECASE):
            continue
        if source_url:
            resolved = urljoin(source_url, href)
        elif re.match(r"^https?://", href, re.IGNORECASE):
            resolved = href
        else:
            continue
        link_type = detect_link_type(resolved)
        if allowed_link_types is not None and link_type not in allowed_link_types:
            continue
        scored = score_link(resolved, _text(anchor), target, link_type)
        if scored.score < MIN_LINK_SCORE:
            continue
        existing = by_url.get(resolved)
        if existing is None or scored.score > existing.score:
            by_url[resolved] = scored
    return sorted(by_url.values(), key=lambda candidate: candidate.score, reverse=True)


def dedupe_records(records: Iterable[RawRecord], max_records: int) -> List[RawRecord]:
    """First occurrence wins by case-insensitive normalized line."""
    output: List[RawRecord] = []
    seen: Set[str] = set()
    for record in records:
        line = normalize_space(record.line())
        key = line.lower()
        if not line or key in seen:
            continue
        seen.add(key)
        output.append(RawRecord(fields={**record.fields, "line": line}, row=record.row))
        if len(output) >= max_records:
            break
    return output


def extract_html(html: str, source_path: str, target: str, options: Optional[HtmlExecutorOptions] = None) -> ExecutorOutput:
    options = options or HtmlExecutorOptions()
    soup = BeautifulSoup(html, "lxml")
    content = select_main_content(soup)

    table_records, table_count, row_count = extract_table_records(content, target)
    min_block_score = options.min_block_score if options.min_block_score is not None else default_min_block_score(target)
    block_records, block_count, skipped = extract_scored_text_blocks(content, target, min_block_score)
    links = extract_link_candidates(content, target, options.source_url, options.allowed_link_types)

    if table_records:
        merged = dedupe_records(table_records + block_records, options.max_records)
    else:
        merged = dedupe_records(block_records + fallback_text_records(content), options.max_records)

    return ExecutorOutput(
        target=target,
        source_type="html",
        source_path=source_path,
        preview="\n".join(record.line() for record in merged[:MAX_PREVIEW_LINES]),
        records=merged,
        link_candidates=links[:MAX_LINK_CANDIDATES],
        diagnostics=ExtractionDiagnostics(
            parser=PARSER_NAME,
            table_count=table_count,
            table_row_count=row_count,
            text_block_count=block_count,
            skipped_noise_blocks=skipped,
            link_candidate_count=len(links),
        ),
    )


def run_html_executor(source_path: str, target: str, options: Optional[HtmlExecutorOptions] = None) -> ExecutorOutput:
    return extract_html(decode_content(Path(source_path).read_bytes()), source_path, target, options)
