"""
Song Structure
Turns structure-analyzer output into ordered sections, with a
duration-based fallback when the analysis is missing or unusable
"""

from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from ..core.config import get_settings
from .state import Section, SectionType

settings = get_settings()

# Label classes emitted by the all-in-one analyzer, in activation order
HARMONIX_LABELS = ['start', 'end', 'intro', 'outro', 'break', 'bridge', 'inst', 'solo', 'verse', 'chorus']

LABEL_TYPES = {
    "intro": SectionType.INTRO,
    "start": SectionType.INTRO,
    "verse": SectionType.VERSE,
    "inst": SectionType.VERSE,
    "solo": SectionType.VERSE,
    "break": SectionType.VERSE,
    "chorus": SectionType.CHORUS,
    "bridge": SectionType.BRIDGE,
    "outro": SectionType.OUTRO,
    "end": SectionType.OUTRO,
}

SECTION_NAMES = {
    SectionType.INTRO: "פתיח",
    SectionType.VERSE: "בית",
    SectionType.CHORUS: "פזמון",
    SectionType.BRIDGE: "ברידג׳",
    SectionType.OUTRO: "סיום",
}

ORDINALS = ['ראשון', 'שני', 'שלישי', 'רביעי', 'חמישי', 'שישי', 'שביעי', 'שמיני']

BOUNDARY_THRESHOLD = 0.5
MIN_BOUNDARY_SPACING = 5.0
MERGE_GAP_SECONDS = 1.0

Span = Tuple[SectionType, float, float]


def label_to_type(raw_label: Optional[str]) -> SectionType:
    """Map an analyzer label to a section type; exact, then partial, then verse"""
    label = (raw_label or "verse").strip().lower()
    if label in LABEL_TYPES:
        return LABEL_TYPES[label]

    for key, section_type in LABEL_TYPES.items():
        if key in label or label in key:
            return section_type

    return SectionType.VERSE


def parse_analysis(analysis: Dict[str, Any], duration: Optional[float] = None) -> List[Section]:
    """
    Build sections from an analysis document.

    Understands segment/label activations, a `segments` list, and
    `boundaries` + `labels`. A beats-only or unrecognised document yields
    the duration-based structure.
    """
    total = float(analysis.get("duration") or duration or settings.DEFAULT_SONG_DURATION)
    bpm = analysis.get("bpm") or settings.DEFAULT_BPM

    if analysis.get("segment") and analysis.get("label"):
        spans = _spans_from_activations(analysis["segment"], analysis["label"], total)
    elif isinstance(analysis.get("segments"), list):
        spans = _spans_from_segments(analysis["segments"])
    elif analysis.get("boundaries") and analysis.get("labels"):
        spans = _spans_from_boundaries(analysis["boundaries"], analysis["labels"])
    else:
        spans = []

    if not spans:
        return smart_structure(total, bpm)

    spans.sort(key=lambda span: span[1])
    return number_sections(merge_consecutive(spans))


def _spans_from_activations(segment: List[float], label: List[List[float]], total: float) -> List[Span]:
    activations = np.asarray(segment, dtype=np.float64)
    labels = np.asarray(label, dtype=np.float64)

    steps = activations.shape[0]
    if steps < 3 or labels.ndim != 2:
        return []

    # Expected layout is [label_class, time_step]
    if labels.shape[0] != len(HARMONIX_LABELS) and labels.shape[1] == len(HARMONIX_LABELS):
        labels = labels.T

    step_seconds = total / steps

    boundaries = [0.0]
    for i in range(1, steps - 1):
        value = activations[i]
        if value > BOUNDARY_THRESHOLD and value >= activations[i - 1] and value >= activations[i + 1]:
            seconds = i * step_seconds
            if seconds - boundaries[-1] > MIN_BOUNDARY_SPACING:
                boundaries.append(seconds)
    boundaries.append(total)

    spans: List[Span] = []
    for start, end in zip(boundaries, boundaries[1:]):
        first = int(np.floor(start / step_seconds))
        last = min(int(np.floor(end / step_seconds)), steps - 1)
        window = labels[:, first:last + 1]
        sums = window.sum(axis=1) if window.size else np.zeros(labels.shape[0])

        # 'start' and 'end' are markers, not sections
        candidates = sums[2:len(HARMONIX_LABELS)]
        index = 2 + int(np.argmax(candidates)) if candidates.size and candidates.max() > 0 else 2
        spans.append((label_to_type(HARMONIX_LABELS[index]), float(start), float(end)))

    return spans


def _spans_from_segments(segments: List[Dict[str, Any]]) -> List[Span]:
    spans: List[Span] = []
    for item in segments:
        start = item.get("start", item.get("startTime", 0))
        end = item.get("end", item.get("endTime"))
        start = float(start or 0)
        end = float(end) if end is not None else start + 30
        spans.append((label_to_type(item.get("label") or item.get("type")), start, end))
    return spans


def _spans_from_boundaries(boundaries: List[float], labels: List[str]) -> List[Span]:
    return [
        (label_to_type(labels[i]), float(boundaries[i]), float(boundaries[i + 1]))
        for i in range(min(len(labels), len(boundaries) - 1))
    ]


def merge_consecutive(spans: List[Span]) -> List[Span]:
    """Join neighbouring spans of the same type separated by under a second"""
    if not spans:
        return []

    merged: List[Span] = []
    current_type, current_start, current_end = spans[0]
    for section_type, start, end in spans[1:]:
        if section_type == current_type and start - current_end < MERGE_GAP_SECONDS:
            current_end = end
        else:
            merged.append((current_type, current_start, current_end))
            current_type, current_start, current_end = section_type, start, end
    merged.append((current_type, current_start, current_end))
    return merged


def number_sections(spans: List[Span]) -> List[Section]:
    """Create sections, adding ordinals only to types that repeat"""
    totals: Dict[SectionType, int] = {}
    for section_type, _, _ in spans:
        totals[section_type] = totals.get(section_type, 0) + 1

    counters: Dict[SectionType, int] = {}
    sections = []
    for section_type, start, end in spans:
        counters[section_type] = counters.get(section_type, 0) + 1
        label = SECTION_NAMES[section_type]
        count = counters[section_type]
        if totals[section_type] > 1 and count <= len(ORDINALS):
            label = f"{label} {ORDINALS[count - 1]}"

        sections.append(Section(
            type=section_type,
            label=label,
            start_time=round(start, 3),
            end_time=round(end, 3),
            duration=round(end - start, 3)
        ))
    return sections


def bars_to_seconds(bars: float, bpm: float) -> float:
    return bars * 4 * 60 / bpm


def smart_structure(duration: float, bpm: float = None) -> List[Section]:
    """Typical pop layout scaled to the song length"""
    bpm = bpm or settings.DEFAULT_BPM

    if duration < 120:
        edge = min(bars_to_seconds(4, bpm), duration * 0.1)
        intro_end = edge
        outro_start = duration - edge
        verse_end = intro_end + (outro_start - intro_end) * 0.5
        spans = [
            (SectionType.INTRO, 0.0, intro_end),
            (SectionType.VERSE, intro_end, verse_end),
            (SectionType.CHORUS, verse_end, outro_start),
            (SectionType.OUTRO, outro_start, duration),
        ]
        return number_sections(spans)

    intro_len = min(bars_to_seconds(4, bpm), 15)

    if duration < 240:
        outro_len = min(bars_to_seconds(4, bpm), 15)
        body = [SectionType.VERSE, SectionType.CHORUS, SectionType.VERSE, SectionType.CHORUS]
        section_len = (duration - intro_len - outro_len) / 4
        bridge_len = 0.0
    else:
        outro_len = min(bars_to_seconds(4, bpm), 20)
        bridge_len = min(bars_to_seconds(8, bpm), 30)
        body = [
            SectionType.VERSE, SectionType.CHORUS, SectionType.VERSE, SectionType.CHORUS,
            SectionType.BRIDGE, SectionType.CHORUS
        ]
        section_len = (duration - intro_len - outro_len - bridge_len) / 5

    spans: List[Span] = [(SectionType.INTRO, 0.0, intro_len)]
    t = intro_len
    for i, section_type in enumerate(body):
        length = bridge_len if section_type == SectionType.BRIDGE else section_len
        # Last body section absorbs rounding up to the outro
        end = duration - outro_len if i == len(body) - 1 else t + length
        spans.append((section_type, t, end))
        t = end
    spans.append((SectionType.OUTRO, duration - outro_len, duration))

    return number_sections(spans)


def default_structure(duration: Optional[float] = None) -> List[Section]:
    """Fallback used when analysis fails outright"""
    return smart_structure(duration or settings.DEFAULT_SONG_DURATION, settings.DEFAULT_BPM)


def sections_from_types(types: List[SectionType]) -> List[Section]:
    """Untimed sections in the given order, labelled like analyzed ones"""
    totals: Dict[SectionType, int] = {}
    for section_type in types:
        totals[SectionType(section_type)] = totals.get(SectionType(section_type), 0) + 1

    counters: Dict[SectionType, int] = {}
    sections = []
    for section_type in map(SectionType, types):
        counters[section_type] = counters.get(section_type, 0) + 1
        label = SECTION_NAMES[section_type]
        if totals[section_type] > 1 and counters[section_type] <= len(ORDINALS):
            label = f"{label} {ORDINALS[counters[section_type] - 1]}"
        sections.append(Section(type=section_type, label=label))
    return sections
