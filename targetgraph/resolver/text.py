"""
Text helpers for mention extraction and entity resolution.

Pure functions only: normalisation, lexical cues (disease words, gene
symbol shapes, generic mechanism phrases) and search-variant generation.
"""

import re
from typing import Iterable, List, Optional

MECHANISM_WORDS = re.compile(r"\b(signaling|signal|pathway|pathways|axis|cascade|network|events?)\b", re.IGNORECASE)
SYMBOL_SHAPE = re.compile(r"^[a-z]{1,6}\d{1,3}[a-z]?$", re.IGNORECASE)
HINT_SYMBOL_SHAPE = re.compile(r"^[a-z]{2,6}\d{1,3}[a-z]?$", re.IGNORECASE)

DISEASE_CUE = re.compile(
    r"\b(?:disease|disorder|syndrome|cancer|carcinoma|tumou?r|diabetes|obesity|lupus|arthritis|"
    r"sclerosis|colitis|asthma|fibrosis|infection|infarction|failure|insufficienc(?:y|ies)|"
    r"nephropathy|neuropathy|pregnancy|mesothelioma)\b",
    re.IGNORECASE,
)
INTERVENTION_CUE = re.compile(
    r"\b(?:drug|treatment|therapy|compound|inhibitor|agonist|antagonist|antibody)\b", re.IGNORECASE
)
GENERIC_TOKEN = re.compile(
    r"^(?:inflammatory|immune|metabolic|cellular|molecular|inflammation|signaling|signal|pathway|"
    r"pathways|mechanism|mechanistic|network|cascade|axis|events?)$",
    re.IGNORECASE,
)
GENERIC_HEAD = re.compile(
    r"\b(?:signaling|signal|pathway|pathways|mechanism|mechanistic|network|cascade|axis|events?)\b",
    re.IGNORECASE,
)
TARGET_LEXEME = re.compile(r"\b(gene|protein|receptor|kinase|enzyme|channel|target)\b", re.IGNORECASE)

ONTOLOGY_PRIORITY = (
    (re.compile(r"^EFO_", re.IGNORECASE), 6),
    (re.compile(r"^MONDO_", re.IGNORECASE), 5),
    (re.compile(r"^ORPHANET_", re.IGNORECASE), 4),
    (re.compile(r"^DOID_", re.IGNORECASE), 3),
    (re.compile(r"^HP_", re.IGNORECASE), 2),
)


def clean(value: str) -> str:
    return re.sub(r"\s+", " ", value or "").strip()


def normalize(value: str) -> str:
    """Lower-case, punctuation (except hyphens) to spaces, collapsed."""
    lowered = (value or "").lower()
    return clean(re.sub(r"[^\w\s-]|_", " ", lowered))


def tokenize(value: str) -> List[str]:
    return [token for token in normalize(value).split(" ") if len(token) > 1]


def alnum_compact(value: str) -> str:
    return re.sub(r"[^a-z0-9]", "", (value or "").lower())


def token_initials(tokens: Iterable[str]) -> str:
    return "".join(compacted[0] for compacted in (alnum_compact(t) for t in tokens) if compacted)


def compact(value: str, max_length: int = 180) -> str:
    normalized = clean(value)
    if len(normalized) <= max_length:
        return normalized
    return f"{normalized[:max_length - 1]}…"


def disease_id_priority(entity_id: str) -> int:
    """EFO > MONDO > ORPHANET > DOID > HP > anything else."""
    for pattern, priority in ONTOLOGY_PRIORITY:
        if pattern.match(entity_id or ""):
            return priority
    return 1


# =============================================================================
# Lexical cues
# =============================================================================

def has_disease_cue(mention: str) -> bool:
    return bool(DISEASE_CUE.search(mention or ""))


def is_measurement_like(name: str, description: Optional[str] = None) -> bool:
    """Biomarker measurement entities that masquerade as diseases."""
    text = f"{name} {description or ''}".lower()
    return any(cue in text for cue in (
        "measurement", "quantification", "metabolite ratio", "in a sample", "concentration",
    ))


def is_likely_symbol_mention(mention: str) -> bool:
    """Single short token, or one with digits: IL6, TNF, BRCA1."""
    normalized = (mention or "").strip()
    if not normalized or " " in normalized:
        return False
    compacted = alnum_compact(normalized)
    if not compacted or len(compacted) > 12:
        return False
    return bool(re.search(r"[0-9]", compacted)) or len(compacted) <= 6


def is_generic_mechanism_mention(mention: str) -> bool:
    """Phrases like 'inflammatory signaling' that name no resolvable entity."""
    normalized = clean(normalize(mention))
    if not normalized:
        return False
    tokens = normalized.split(" ")
    if len(tokens) > 4 or has_disease_cue(normalized):
        return False
    if any(SYMBOL_SHAPE.match(token.replace("-", "")) for token in tokens):
        return False
    generic = sum(1 for token in tokens if GENERIC_TOKEN.match(token))
    if generic == len(tokens):
        return True
    return generic >= max(1, len(tokens) - 1) and bool(GENERIC_HEAD.search(normalized))


def infer_mention_type(mention: str) -> str:
    normalized = clean(mention)
    if not normalized:
        return 'unknown'
    if has_disease_cue(normalized):
        return 'disease'
    if INTERVENTION_CUE.search(normalized):
        return 'intervention'
    if is_likely_symbol_mention(normalized):
        return 'target'
    return 'unknown'


def is_explicit_target_lexeme(mention: str) -> bool:
    normalized = (mention or "").strip()
    if not normalized:
        return False
    return bool(re.search(r"[0-9]|[-+]", normalized) or TARGET_LEXEME.search(normalized))


def symbol_hint_from_mention(mention: str) -> Optional[str]:
    """'IL6 signaling' -> 'IL6'; None when the mention is not symbol-shaped."""
    trimmed = clean(MECHANISM_WORDS.sub(" ", mention or ""))
    compacted = alnum_compact(trimmed or mention)
    if not HINT_SYMBOL_SHAPE.match(compacted):
        return None
    return compacted.upper()


def is_high_signal_drug_target_hint(name: str, description: Optional[str] = None) -> bool:
    """Reject cell lines, assays and composite targets from drug -> target hints."""
    normalized_name = clean(name)
    if not normalized_name:
        return False
    details = clean(description or "").lower()
    combined = f"{normalized_name} {details}".lower()
    if re.search(r"cell\s*line|resistan|cytotox|xenograft|assay|screen", combined) or re.search(r"[/\\]", normalized_name):
        return False
    if is_likely_symbol_mention(normalized_name.upper()):
        return True
    return bool(re.search(r"protein|enzyme|receptor|ion channel|kinase|transporter|gpcr", details))


def mention_has_surface_support(query: str, mention: str) -> bool:
    """True when ``mention`` is actually written in ``query`` (modulo punctuation)."""
    display = clean(mention)
    if not display:
        return False
    query_norm = normalize(query)
    mention_norm = normalize(display)
    if not query_norm or not mention_norm:
        return False
    if mention_norm in query_norm:
        return True

    mention_compact = alnum_compact(display)
    if mention_compact and mention_compact in alnum_compact(query):
        return True

    mention_tokens = mention_norm.split(" ")
    if len(mention_tokens) != 1:
        return False
    token = mention_tokens[0]
    return any(
        candidate == token or candidate.startswith(token) or token.startswith(candidate)
        for candidate in query_norm.split(" ")
    )


# =============================================================================
# Search variants
# =============================================================================

def base_mention_variants(mention: str) -> List[str]:
    """
    Up to four search strings for one mention.

    IL6 -> IL6, IL-6, IL 6; hyphens to spaces; apostrophes dropped;
    short single tokens upper-cased; mechanism words trimmed.
    """
    clean_mention = (mention or "").strip()
    if not clean_mention:
        return []
    variants = [clean_mention]
    compacted = re.sub(r"\s+", "", clean_mention)

    def add(value: str) -> None:
        if value not in variants:
            variants.append(value)

    if re.match(r"^[A-Za-z]{2,8}[0-9]{1,3}$", compacted):
        split_point = re.search(r"[0-9]", compacted).start()
        if split_point > 1:
            add(f"{compacted[:split_point]}-{compacted[split_point:]}")
            add(f"{compacted[:split_point]} {compacted[split_point:]}")

    if "-" in clean_mention:
        add(clean_mention.replace("-", " "))
    if "'" in clean_mention:
        add(clean_mention.replace("'", ""))
    if re.match(r"^[a-z0-9-]{2,8}$", compacted, re.IGNORECASE) and " " not in clean_mention:
        add(compacted.upper())

    trimmed = clean(MECHANISM_WORDS.sub(" ", clean_mention))
    if len(trimmed) >= 2 and trimmed != clean_mention:
        add(trimmed)

    return [v for v in (clean(item) for item in variants) if len(v) >= 2][:4]


def target_symbol_hint_boost(mention: str, name: str, description: Optional[str] = None) -> float:
    """+0.45 when a symbol-shaped mention appears in the candidate text, else -0.12."""
    compacted = alnum_compact(mention)
    if not HINT_SYMBOL_SHAPE.match(compacted):
        return 0.0
    hints = {compacted}
    split_index = re.search(r"[0-9]", compacted).start()
    if split_index > 1:
        prefix, suffix = compacted[:split_index], compacted[split_index:]
        hints.update({f"{prefix}-{suffix}", f"{prefix} {suffix}"})
        if prefix == "il":
            hints.add(f"interleukin {suffix}")
    haystack = f"{name} {description or ''}".lower()
    return 0.45 if any(hint in haystack for hint in hints) else -0.12
