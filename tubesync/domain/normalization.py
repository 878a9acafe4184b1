from __future__ import annotations

import re
import unicodedata
from difflib import SequenceMatcher
from typing import Iterable

from .entities import TrackDescriptor


QUERY_TITLE_DELIMITER = " - "
QUERY_ARTIST_DELIMITER = ", "

_FEAT_PATTERN = re.compile(r"\b(feat\.?|ft\.)\b", re.IGNORECASE)
_PARENS_CHARS_PATTERN = re.compile(r"[\(\)\[\]\{\}]")
_PARENS_CONTENT_PATTERN = re.compile(r"\s*[\(\[\{][^\)\]\}]*[\)\]\}]\s*")
# Keep all unicode word characters and spaces; strip punctuation/symbols. Then remove underscores separately.
_NON_WORD_SPACE_PATTERN = re.compile(r"[^\w\s]", re.UNICODE)
_MULTISPACE_PATTERN = re.compile(r"\s+")
_TAIL_TOKENS = {
    "vol", "pt", "remaster", "remastered", "live", "edit",
}
# Words video titles add around the song name
_VIDEO_NOISE_TOKENS = {
    "official", "video", "music", "audio", "lyrics", "lyric", "hd", "hq", "4k", "mv", "topic",
}


def _strip_diacritics(text: str) -> str:
    normalized = unicodedata.normalize("NFKD", text)
    return "".join(c for c in normalized if not unicodedata.combining(c))


def normalize_string(value: str) -> str:
    value = value or ""
    value = _strip_diacritics(value)
    value = value.lower()
    value = value.replace("&", " and ")
    value = _FEAT_PATTERN.sub(" ", value)
    # Remove parenthetical/bracketed content entirely
    while True:
        new_value = _PARENS_CONTENT_PATTERN.sub(" ", value)
        if new_value == value:
            break
        value = new_value
    value = _PARENS_CHARS_PATTERN.sub(" ", value)
    value = _NON_WORD_SPACE_PATTERN.sub(" ", value)
    value = value.replace("_", " ")
    value = _MULTISPACE_PATTERN.sub(" ", value).strip()
    return value


def normalize_artist_tokens(artists: Iterable[str]) -> list[str]:
    """Normalize artist names and return a list of significant tokens.
    Drops numeric-only and common tail/service tokens like 'vol', 'pt', 'remaster', 'live', 'edit'.
    """
    tokens: list[str] = []
    for artist in artists or []:
        norm = normalize_string(artist)
        for tok in norm.split():
            if not tok:
                continue
            if tok.isdigit():
                continue
            if tok in _TAIL_TOKENS:
                continue
            if tok == "the":
                continue
            tokens.append(tok)
    return tokens


def strip_video_noise(title: str) -> str:
    """Normalize a video title and drop words like 'official video'."""
    tokens = [t for t in normalize_string(title).split() if t not in _VIDEO_NOISE_TOKENS]
    return " ".join(tokens)


def build_search_query(track: TrackDescriptor) -> str:
    """Build the target search query: 'Title - Artist A, Artist B'."""
    artists = [a for a in track.artist_names if a]
    if not artists:
        return track.title
    return f"{track.title}{QUERY_TITLE_DELIMITER}{QUERY_ARTIST_DELIMITER.join(artists)}"


def title_similarity(source_title: str, candidate_title: str) -> float:
    """Similarity in [0, 1] between a track title and a video title.

    A video title that contains the whole normalized track title scores 1.0,
    since videos are commonly named 'Artist - Title (Official Video)'.
    """
    src = normalize_string(source_title)
    cand = strip_video_noise(candidate_title)
    if not src or not cand:
        return 0.0
    if f" {src} " in f" {cand} ":
        return 1.0
    return SequenceMatcher(None, src, cand).ratio()


def artist_overlap(artists: Iterable[str], *texts: str) -> float:
    """Fraction of significant artist tokens found in any of the given texts."""
    tokens = set(normalize_artist_tokens(artists))
    if not tokens:
        return 0.0
    haystack = set()
    for text in texts:
        haystack.update(normalize_string(text or "").split())
    return len(tokens & haystack) / len(tokens)
