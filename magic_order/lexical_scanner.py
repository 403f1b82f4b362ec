"""
Lexical Pre-Scanner - flags words in a raw message that match no known
client or product, for highlighting in the message editor.

Purely local: no network calls, safe to run while an analysis is in flight.

Heuristic:
- lower-case, strip punctuation, split on whitespace
- drop stop words, pure numbers and words of 2 characters or less
- the first 3 surviving words (stopping at the first quantity) are client
  candidates, everything after is a product candidate
- a word is "known" when it contains, or is contained in, a catalog name
  (client first names / product and variant names)

The bidirectional containment is loose on purpose: a short word like "ana"
matches "banana". Such hits show up as unflagged words, never as a wrong
classification.
"""

import re
import logging
from typing import List, Optional, Tuple

from magic_order.models import CatalogSnapshot, TextSegment, TokenKind, UnknownToken


logger = logging.getLogger(__name__)


# ============================================
# PRECOMPILED PATTERNS
# ============================================

RE_PUNCTUATION = re.compile(r"[.,/#!$%\^&*;:{}=_`~()]")
RE_WHITESPACE = re.compile(r"\s+")
RE_NUMERIC_ONLY = re.compile(r"^\d+$")

CLIENT_CANDIDATE_LIMIT = 3
MIN_WORD_LENGTH = 3

# Determiners, conjunctions, units, small numbers and politeness filler
STOP_WORDS = frozenset({
    "y", "el", "la", "los", "las", "un", "una", "unos", "unas", "de", "del", "a", "al",
    "en", "para", "por", "con", "tambien", "también", "más", "mas", "menos", "gracias",
    "kg", "kilo", "kilos", "g", "gramo", "gramos", "litro", "litros", "l", "ml",
    "favor", "xfa", "porfa", "quiero", "necesito", "me", "te", "se", "mi",
    "manda", "mandame", "enviame",
    "uno", "dos", "tres", "cuatro", "cinco", "seis", "siete", "ocho", "nueve", "diez",
    "docena", "media", "medio",
})

NUMBER_WORDS = frozenset({
    "uno", "dos", "tres", "cuatro", "cinco", "seis", "siete", "ocho", "nueve", "diez",
    "docena", "media", "medio",
})


def tokenize(message: str) -> List[str]:
    """Lower-case, strip punctuation and split on whitespace."""
    cleaned = RE_PUNCTUATION.sub("", message.lower())
    return [word for word in RE_WHITESPACE.split(cleaned) if word]


def is_quantity_word(word: str) -> bool:
    return bool(RE_NUMERIC_ONLY.match(word)) or word in NUMBER_WORDS


def split_candidates(words: List[str]) -> Tuple[List[str], List[str]]:
    """
    Split tokenized words into (client candidates, product candidates).

    Client candidates are the first surviving words before any quantity, up to
    CLIENT_CANDIDATE_LIMIT. "juan 3 leches" gives (["juan"], ["leches"]).
    """
    client_candidates: List[str] = []
    product_candidates: List[str] = []
    seen_quantity = False

    for word in words:
        if is_quantity_word(word):
            seen_quantity = True
        if word in STOP_WORDS or RE_NUMERIC_ONLY.match(word) or len(word) < MIN_WORD_LENGTH:
            continue
        if not seen_quantity and len(client_candidates) < CLIENT_CANDIDATE_LIMIT and not product_candidates:
            client_candidates.append(word)
        else:
            product_candidates.append(word)

    return client_candidates, product_candidates


def _contains_either_way(word: str, names: List[str]) -> bool:
    return any(name in word or word in name for name in names if name)


# ============================================
# SCANNER
# ============================================

class LexicalScanner:
    """Matches message words against one catalog snapshot"""

    def __init__(self, catalog: CatalogSnapshot):
        self.catalog = catalog
        self.client_first_names = [
            client.name.lower().split()[0] for client in catalog.clients if client.name.strip()
        ]
        product_names = [product.name.lower() for product in catalog.products]
        for product in catalog.products:
            product_names.extend(variant.name.lower() for variant in product.variants)
        self.product_names = product_names

    @property
    def has_catalog(self) -> bool:
        return bool(self.catalog.clients) and bool(self.catalog.products)

    def is_known_client(self, word: str) -> bool:
        return _contains_either_way(word, self.client_first_names)

    def is_known_product(self, word: str) -> bool:
        return _contains_either_way(word, self.product_names)

    def find_unknown_tokens(self, message: str) -> List[UnknownToken]:
        """
        Return unmatched words in order of first appearance.

        Each word is reported at most once and with a single kind; a word
        known as a client is never reported as an unknown product.
        """
        if not message or not self.has_catalog:
            return []

        client_candidates, product_candidates = split_candidates(tokenize(message))
        found: List[UnknownToken] = []
        reported = set()

        for word in client_candidates:
            if word in reported:
                continue
            if not self.is_known_client(word) and not self.is_known_product(word):
                found.append(UnknownToken(word=word, kind=TokenKind.UNKNOWN_CLIENT))
                reported.add(word)

        for word in product_candidates:
            if word in reported:
                continue
            if not self.is_known_product(word) and not self.is_known_client(word):
                found.append(UnknownToken(word=word, kind=TokenKind.UNKNOWN_PRODUCT))
                reported.add(word)

        logger.debug(f"[SCANNER] {len(found)} unknown tokens in message of {len(message)} chars")
        return found

    def segments(self, message: str, tokens: Optional[List[UnknownToken]] = None) -> List[TextSegment]:
        """
        Split the original message into display segments.

        Each unknown word is searched, case-insensitively and as a whole
        word, only in the part of the message not consumed yet, so spans are
        emitted left to right and never highlighted twice. Joining the
        segment texts gives back the original message exactly.
        """
        if not message:
            return []
        if tokens is None:
            tokens = self.find_unknown_tokens(message)

        result: List[TextSegment] = []
        cursor = 0

        for token in tokens:
            pattern = re.compile(rf"(?<!\w){re.escape(token.word)}(?!\w)", re.IGNORECASE)
            match = pattern.search(message, cursor)
            if not match:
                # Token text was altered by punctuation stripping
                continue
            if match.start() > cursor:
                result.append(TextSegment(text=message[cursor:match.start()]))
            result.append(TextSegment(text=match.group(0), is_highlighted=True, kind=token.kind))
            cursor = match.end()

        if cursor < len(message):
            result.append(TextSegment(text=message[cursor:]))

        return result


def scan_message(message: str, catalog: CatalogSnapshot) -> Tuple[List[UnknownToken], List[TextSegment]]:
    """Convenience wrapper: unknown tokens plus display segments."""
    scanner = LexicalScanner(catalog)
    tokens = scanner.find_unknown_tokens(message)
    return tokens, scanner.segments(message, tokens)
