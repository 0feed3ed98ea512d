"""Typo tolerance for search queries.

The normalizer lowercases and tokenizes a query and replaces tokens that
look misspelled with a better-known word. Candidates come from three
families: single-edit variants (insertion, deletion, substitution, adjacent
transposition), keyboard-neighbour substitutions, and words sharing the
token's Soundex code.

A candidate only replaces a token when it is found in a reference
``Vocabulary`` with sufficient frequency. Without a vocabulary every token is
returned unchanged. Correction never raises: any failure keeps the original
token.
"""

import string
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

import structlog

logger = structlog.get_logger("search_service.typo_tolerance")

ALPHABET = string.ascii_lowercase

KEYBOARD_NEIGHBORS: Dict[str, Tuple[str, ...]] = {
    'q': ('w', 'a', 's'),
    'w': ('q', 'e', 'a', 's', 'd'),
    'e': ('w', 'r', 's', 'd', 'f'),
    'r': ('e', 't', 'd', 'f', 'g'),
    't': ('r', 'y', 'f', 'g', 'h'),
    'y': ('t', 'u', 'g', 'h', 'j'),
    'u': ('y', 'i', 'h', 'j', 'k'),
    'i': ('u', 'o', 'j', 'k', 'l'),
    'o': ('i', 'p', 'k', 'l'),
    'p': ('o', 'l'),
    'a': ('q', 'w', 's', 'z', 'x'),
    's': ('a', 'w', 'e', 'd', 'z', 'x', 'c'),
    'd': ('s', 'e', 'r', 'f', 'x', 'c', 'v'),
    'f': ('d', 'r', 't', 'g', 'c', 'v', 'b'),
    'g': ('f', 't', 'y', 'h', 'v', 'b', 'n'),
    'h': ('g', 'y', 'u', 'j', 'b', 'n', 'm'),
    'j': ('h', 'u', 'i', 'k', 'n', 'm'),
    'k': ('j', 'i', 'o', 'l', 'm'),
    'l': ('k', 'o', 'p'),
    'z': ('a', 's', 'x'),
    'x': ('z', 'a', 's', 'd', 'c'),
    'c': ('x', 's', 'd', 'f', 'v'),
    'v': ('c', 'd', 'f', 'g', 'b'),
    'b': ('v', 'f', 'g', 'h', 'n'),
    'n': ('b', 'g', 'h', 'j', 'm'),
    'm': ('n', 'h', 'j', 'k'),
}

SOUNDEX_CODES: Dict[str, str] = {
    **dict.fromkeys("bfpv", "1"),
    **dict.fromkeys("cgjkqsxz", "2"),
    **dict.fromkeys("dt", "3"),
    "l": "4",
    **dict.fromkeys("mn", "5"),
    "r": "6",
}


@dataclass(frozen=True)
class TypoToleranceConfig:
    """Knobs for candidate generation and correction."""
    min_word_length: int = 3
    max_edit_distance: int = 2
    max_alternatives: int = 10
    similarity_threshold: float = 0.7
    min_frequency: int = 1


@dataclass(frozen=True)
class QueryCorrection:
    """Outcome of normalizing a query."""
    original: str
    corrected: str
    replacements: Tuple[Tuple[str, str], ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.replacements)


class Vocabulary:
    """Reference word list with frequencies.

    Words are stored lowercased. A phonetic index (Soundex code to words) is
    built up front so phonetic candidates are a dictionary lookup.
    """

    def __init__(self, frequencies: Mapping[str, int]):
        self.frequencies: Dict[str, int] = {}
        for word, count in frequencies.items():
            word = word.lower()
            self.frequencies[word] = self.frequencies.get(word, 0) + int(count)

        self._phonetic_index: Dict[str, List[str]] = {}
        for word in self.frequencies:
            code = soundex(word)
            if code:
                self._phonetic_index.setdefault(code, []).append(word)

    @classmethod
    def from_words(cls, words: Iterable[str]) -> "Vocabulary":
        """Build from a token stream; frequency is the occurrence count."""
        counts: Dict[str, int] = {}
        for word in words:
            word = word.lower()
            counts[word] = counts.get(word, 0) + 1
        return cls(counts)

    def __contains__(self, word: str) -> bool:
        return word in self.frequencies

    def __len__(self) -> int:
        return len(self.frequencies)

    def frequency(self, word: str) -> int:
        return self.frequencies.get(word, 0)

    def phonetic_matches(self, word: str) -> List[str]:
        return list(self._phonetic_index.get(soundex(word), ()))


def soundex(word: str) -> str:
    """American Soundex code (letter + three digits); empty for non-alphabetic input."""
    letters = [c for c in word.lower() if c in ALPHABET]
    if not letters:
        return ""

    first = letters[0]
    code = [first.upper()]
    previous = SOUNDEX_CODES.get(first, "")

    for char in letters[1:]:
        digit = SOUNDEX_CODES.get(char, "")
        if digit and digit != previous:
            code.append(digit)
            if len(code) == 4:
                break
        # 'h' and 'w' do not separate letters with the same code
        if char not in "hw":
            previous = digit

    return "".join(code).ljust(4, "0")


def levenshtein(a: str, b: str) -> int:
    """Edit distance with unit-cost insertion, deletion and substitution."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (char_a != char_b),
            ))
        previous = current
    return previous[-1]


def jaro_winkler(a: str, b: str) -> float:
    """Jaro-Winkler similarity in ``[0, 1]``.

    Matching window is ``max(0, max_len // 2 - 1)``; the Winkler bonus uses
    a common prefix of at most four characters with scaling factor 0.1.
    """
    len_a, len_b = len(a), len(b)
    if len_a == 0:
        return 1.0 if len_b == 0 else 0.0
    if len_b == 0:
        return 0.0
    if a == b:
        return 1.0

    window = max(0, max(len_a, len_b) // 2 - 1)
    a_matches = [False] * len_a
    b_matches = [False] * len_b

    matches = 0
    for i in range(len_a):
        start = max(0, i - window)
        end = min(i + window + 1, len_b)
        for j in range(start, end):
            if b_matches[j] or a[i] != b[j]:
                continue
            a_matches[i] = True
            b_matches[j] = True
            matches += 1
            break

    if matches == 0:
        return 0.0

    transpositions = 0
    k = 0
    for i in range(len_a):
        if not a_matches[i]:
            continue
        while not b_matches[k]:
            k += 1
        if a[i] != b[k]:
            transpositions += 1
        k += 1

    jaro = (
        matches / len_a
        + matches / len_b
        + (matches - transpositions / 2) / matches
    ) / 3

    prefix = 0
    for i in range(min(len_a, len_b, 4)):
        if a[i] != b[i]:
            break
        prefix += 1

    return jaro + 0.1 * prefix * (1 - jaro)


def edits1(word: str) -> Iterator[str]:
    """All strings one insertion, deletion, substitution or transposition away."""
    for i in range(len(word) + 1):
        for char in ALPHABET:
            yield word[:i] + char + word[i:]
    for i in range(len(word)):
        yield word[:i] + word[i + 1:]
    for i in range(len(word)):
        for char in ALPHABET:
            if char != word[i]:
                yield word[:i] + char + word[i + 1:]
    for i in range(len(word) - 1):
        yield word[:i] + word[i + 1] + word[i] + word[i + 2:]


def keyboard_variants(word: str) -> Iterator[str]:
    """Substitutions of each character with its keyboard neighbours."""
    for i, char in enumerate(word):
        for neighbor in KEYBOARD_NEIGHBORS.get(char.lower(), ()):
            yield word[:i] + neighbor + word[i + 1:]


def _take(iterable: Iterable[str], limit: int) -> List[str]:
    taken = []
    for item in iterable:
        if len(taken) >= limit:
            break
        taken.append(item)
    return taken


class QueryNormalizer:
    """Corrects likely typos in query tokens.

    Parameters
    - config: ``TypoToleranceConfig``; defaults apply when omitted
    - vocabulary: Optional reference ``Vocabulary``. Without it correction is
      a no-op and tokens pass through unchanged.
    """

    def __init__(
        self,
        config: Optional[TypoToleranceConfig] = None,
        vocabulary: Optional[Vocabulary] = None
    ):
        self.config = config or TypoToleranceConfig()
        self.vocabulary = vocabulary

    def tokenize(self, text: str) -> List[str]:
        return text.lower().split()

    def correct_query(self, query: str) -> str:
        """Return the normalized query with corrected tokens."""
        return self.correct_query_with_details(query).corrected

    def correct_query_with_details(self, query: str) -> QueryCorrection:
        corrected_tokens = []
        replacements = []

        for token in self.tokenize(query):
            replacement = self._safe_correct(token)
            if replacement != token:
                replacements.append((token, replacement))
            corrected_tokens.append(replacement)

        correction = QueryCorrection(
            original=query,
            corrected=" ".join(corrected_tokens),
            replacements=tuple(replacements),
        )

        if correction.changed:
            logger.info(
                "Query corrected",
                original=query[:50],
                corrected=correction.corrected[:50],
                replacements=len(replacements)
            )

        return correction

    def _safe_correct(self, token: str) -> str:
        try:
            return self.correct_token(token) or token
        except Exception as e:
            logger.warning("Typo correction failed, keeping token", token=token, error=str(e))
            return token

    def correct_token(self, token: str) -> Optional[str]:
        """Best vocabulary-validated correction, or ``None`` to keep the token."""
        if len(token) < self.config.min_word_length:
            return None
        if not self.vocabulary:
            return None
        if self._is_known(token):
            return None

        candidates = self._validated_candidates(token)
        best: Optional[str] = None
        best_rank: Tuple[float, int] = (self.config.similarity_threshold, -1)

        for candidate in candidates:
            rank = (self.calculate_similarity(token, candidate), self.vocabulary.frequency(candidate))
            if rank[0] >= best_rank[0] and rank > best_rank:
                best, best_rank = candidate, rank

        return best

    def _is_known(self, word: str) -> bool:
        return self.vocabulary.frequency(word) >= self.config.min_frequency

    def _validated_candidates(self, token: str) -> List[str]:
        limit = self.config.max_alternatives
        found: List[str] = []
        seen: Set[str] = {token}

        def collect(words: Iterable[str]) -> None:
            for word in words:
                if len(found) >= limit:
                    return
                if word in seen:
                    continue
                seen.add(word)
                if self._is_known(word):
                    found.append(word)

        collect(edits1(token))
        if not found and self.config.max_edit_distance >= 2:
            collect(e2 for e1 in set(edits1(token)) for e2 in edits1(e1))
        collect(keyboard_variants(token))
        collect(self.vocabulary.phonetic_matches(token))

        return found

    def generate_alternatives(self, word: str) -> List[str]:
        """Alternative spellings for fuzzy matching.

        Each generated family is capped at ``max_alternatives``. The result
        contains the word itself and its Soundex code first.
        """
        if len(word) < self.config.min_word_length:
            return [word]

        limit = self.config.max_alternatives
        alternatives = [word, soundex(word)]
        alternatives.extend(_take(edits1(word), limit))
        alternatives.extend(_take(keyboard_variants(word), limit))

        # dict preserves first-seen order
        return list(dict.fromkeys(a for a in alternatives if a))

    def calculate_similarity(self, word1: str, word2: str) -> float:
        """Blend of edit-distance, Jaro-Winkler and phonetic similarity."""
        if word1 == word2:
            return 1.0

        longest = max(len(word1), len(word2))
        edit_similarity = 1 - levenshtein(word1, word2) / longest
        phonetic = 1.0 if soundex(word1) == soundex(word2) else 0.0

        return edit_similarity * 0.4 + jaro_winkler(word1, word2) * 0.4 + phonetic * 0.2

    def is_phonetically_close(self, word1: str, word2: str) -> bool:
        code = soundex(word1)
        return bool(code) and code == soundex(word2)
