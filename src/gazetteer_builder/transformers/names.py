# src/gazetteer_builder/transformers/names.py
# name folding, canonical keys, phonetic keys
from __future__ import annotations
import re
import unicodedata

from metaphone import doublemetaphone
from unidecode import unidecode

KEY_LENGTH = 40

# Leading generic words removed (not abbreviated) when simplifying a variant
VARIANT_START_RX = re.compile(
    r"^((CANON DE|CERRO|FORT|FT|ILE D|ILE DE|ILE DU|ILES|ILSA|LA|LAKE|LAS|LE|LOS|MOUNT|MT|POINT|PT|THE) )(.*)"
)

# Abbreviations folded only when the word starts the name
LEADING_ABBREVIATIONS = (
    ("FORT ", "FT"),
    ("MOUNT ", "MT"),
    ("POINT ", "PT"),
)

SAINT_ABBREVIATIONS = (
    ("SAINT ", "ST"),
    ("SAINTE ", "STE"),
)

_REARRANGED_POSSESSIVE_RX = re.compile(r"(.+), (\w)(.*')")
_REARRANGED_RX = re.compile(r"(.+), (\w)(.*)")
_KEY_CHAR_RX = re.compile(r"[^0-9A-Z ]")


def strip_diacritics(text: str) -> str:
    """Remove combining accents while keeping the base letters ("Coös" -> "Coos")."""
    if not text:
        return text
    decomposed = unicodedata.normalize("NFD", text)
    return unicodedata.normalize(
        "NFC", "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    )


def plain_ascii_upper(text: str) -> str:
    """Transliterate any script to plain uppercase ASCII."""
    if not text:
        return ""
    return unidecode(text).upper()


def _drop_parenthetical(name: str) -> str:
    pos = name.find("(")
    return name[:pos].strip() if pos >= 0 else name


def simplify(name: str | None, as_variant: bool = False) -> str:
    """
    Fold a name to its matching form.

    Parenthetical suffixes are dropped, the text is transliterated to
    uppercase ASCII, '-' and '.' become spaces and everything outside
    [A-Z0-9 ] is removed. A leading FORT/MOUNT/POINT is abbreviated, or,
    with ``as_variant``, a leading generic word (LAKE, THE, LOS, ...) is
    removed instead. SAINT/SAINTE at the start always become ST/STE.
    Spaces are then squeezed out and the result capped at 40 characters.
    """
    if not name:
        return ""

    s = plain_ascii_upper(_drop_parenthetical(name))
    s = s.replace("-", " ").replace(".", " ")
    s = _KEY_CHAR_RX.sub("", s)

    if as_variant:
        m = VARIANT_START_RX.match(s)
        if m:
            s = m.group(3)
    else:
        for prefix, abbreviation in LEADING_ABBREVIATIONS:
            if s.startswith(prefix):
                s = abbreviation + s[len(prefix):]
                break

    for prefix, abbreviation in SAINT_ABBREVIATIONS:
        if s.startswith(prefix):
            s = abbreviation + s[len(prefix):]
            break

    return s.replace(" ", "")[:KEY_LENGTH]


def canonical_key(name: str | None) -> str:
    """Deterministic ASCII key (<= 40 chars) for a display name. Not unique."""
    return simplify(name)


def close_match(target: str | None, candidate: str | None) -> bool:
    """
    One-directional prefix match ignoring case, diacritics and punctuation.

    close_match("Spring", "Springfield") is True, the reverse is False.
    """
    if not target or not candidate:
        return False
    return simplify(candidate).startswith(simplify(target))


def fix_rearranged_name(name: str | None) -> tuple[str | None, str]:
    """
    Undo comma-inverted names.

    "Mount Pleasant, The" -> ("The Mount Pleasant", "The")
    "Brien, o'"           -> ("O'Brien", "O'")

    Returns the (possibly rewritten) name and the article or qualifier that
    was moved back to the front, or "" when the name is not inverted.
    """
    if not name:
        return name, ""

    m = _REARRANGED_POSSESSIVE_RX.fullmatch(name)
    if m:
        variant = m.group(2).upper() + m.group(3)
        return variant + m.group(1), variant

    m = _REARRANGED_RX.fullmatch(name)
    if m:
        variant = m.group(2).upper() + m.group(3)
        return variant + " " + m.group(1), variant

    return name, ""


def phonetic_keys(name: str | None) -> tuple[str, str]:
    """
    Double-metaphone codes for a name.

    Always returns two codes; the secondary repeats the primary when the
    name has no alternate pronunciation.
    """
    if not name:
        return "", ""
    primary, secondary = doublemetaphone(plain_ascii_upper(_drop_parenthetical(name)))
    return primary, secondary or primary
