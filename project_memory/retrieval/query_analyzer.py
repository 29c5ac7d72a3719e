"""
Query analyzer. Picks a retrieval strategy from lexical cues alone.

Rules, first match wins:

1. code syntax (calls, paths, file names, ``::``/``=>``, a leading code
   keyword, or camelCase/snake_case dominating the tokens) → ``keyword``
2. a short query (≤ 3 tokens) naming domain terms (acronyms, capitalised
   phrases, known technical vocabulary) → ``keyword_boost``
3. an interrogative, or a sentence with enough stopwords → ``vector``
4. anything else → ``hybrid``

:func:`classify` is pure; the same text always yields the same analysis.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from enum import Enum

from ..errors import ValidationError


class Strategy(str, Enum):
    KEYWORD = "keyword"
    VECTOR = "vector"
    KEYWORD_BOOST = "keyword_boost"
    HYBRID = "hybrid"

    @classmethod
    def parse(cls, value: "str | Strategy") -> "Strategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower().replace("-", "_"))
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise ValidationError(f"Unknown strategy '{value}'. Valid: {valid}") from None


@dataclass(frozen=True)
class QueryAnalysis:
    """Outcome of :func:`classify`."""

    strategy: Strategy
    confidence: float
    rule: str
    keywords: tuple[str, ...] = ()
    has_code_elements: bool = False
    has_domain_terms: bool = False
    is_natural_language: bool = False
    token_count: int = 0
    stopword_ratio: float = 0.0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["strategy"] = self.strategy.value
        data["keywords"] = list(self.keywords)
        return data


# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------

CODE_KEYWORDS = frozenset({
    "function", "def", "class", "import", "from", "const", "let", "var",
    "fn", "func", "struct", "interface", "enum", "return", "async", "await",
    "impl", "trait", "type", "public", "private", "static", "void",
})

TECHNICAL_TERMS = frozenset({
    "api", "database", "db", "auth", "authentication", "authorization", "jwt",
    "oauth", "react", "vue", "angular", "node", "python", "docker",
    "kubernetes", "k8s", "aws", "azure", "gcp", "postgresql", "postgres",
    "mysql", "sqlite", "mongodb", "redis", "graphql", "rest", "grpc",
    "microservice", "microservices", "kafka", "elasticsearch", "nginx",
    "websocket", "http", "https", "sql", "orm", "cache", "cdn", "ci", "cd",
})

QUESTION_WORDS = frozenset({
    "how", "what", "why", "when", "where", "which", "who", "whom", "whose",
    "should", "can", "could", "would", "is", "are", "does", "do", "did",
    "will", "shall",
})

STOPWORDS = frozenset({
    "a", "an", "the", "and", "or", "but", "if", "then", "so", "of", "to",
    "in", "on", "at", "by", "for", "with", "about", "into", "from", "as",
    "is", "are", "was", "were", "be", "been", "being", "it", "its", "this",
    "that", "these", "those", "we", "our", "us", "you", "your", "i", "me",
    "my", "they", "them", "their", "he", "she", "his", "her", "do", "does",
    "did", "have", "has", "had", "not", "no", "can", "could", "should",
    "would", "will", "shall", "may", "might", "must", "how", "what", "why",
    "when", "where", "which", "who", "there", "here", "all", "any", "some",
    "than", "too", "very", "just", "also", "up", "out", "over",
})

# Related terms appended by expand_query (first matching key wins)
QUERY_EXPANSIONS: tuple[tuple[str, str], ...] = (
    ("frontend", "frontend UI user interface client-side"),
    ("backend", "backend server API service-side"),
    ("database", "database DB storage persistence data"),
    ("auth", "authentication authorization login security jwt oauth"),
    ("api", "API endpoint REST GraphQL service interface"),
    ("react", "React ReactJS component JSX hooks"),
    ("test", "test testing unit integration spec TDD"),
    ("deploy", "deploy deployment CI CD pipeline docker kubernetes"),
)

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_CALL_RE = re.compile(r"[A-Za-z_][\w.]*\(")
_PATH_RE = re.compile(r"(?:^|\s)[\w.~-]*[/\\][\w./\\-]+")
_FILE_EXT_RE = re.compile(
    r"\b[\w-]+\.(?:py|pyi|js|mjs|cjs|ts|tsx|jsx|go|rs|java|kt|rb|php|c|h|cc|cpp|hpp|cs|"
    r"swift|scala|sql|sh|json|ya?ml|toml|ini|cfg|md|html|css)\b"
)
_OPERATOR_RE = re.compile(r"::|=>|->")
_IDENT_RE = re.compile(r"^[A-Za-z_][\w]*$")
_CAMEL_RE = re.compile(r"^(?:[a-z]+[0-9]*[A-Z]|[A-Z][a-z0-9]+[A-Z][a-z])\w*$")
_SNAKE_RE = re.compile(r"^_?[A-Za-z0-9]+(?:_[A-Za-z0-9]+)+$")
_ACRONYM_RE = re.compile(r"^[A-Z][A-Z0-9]{1,}s?$")
_STRIP = "\"'`.,;:!?()[]{}<>"


def tokenize(text: str) -> list[str]:
    """Whitespace tokens with surrounding punctuation stripped."""
    tokens = []
    for raw in (text or "").split():
        token = raw.strip(_STRIP)
        if token:
            tokens.append(token)
    return tokens


def extract_keywords(tokens: list[str]) -> tuple[str, ...]:
    seen: list[str] = []
    for token in tokens:
        lower = token.lower()
        if len(lower) > 2 and lower not in STOPWORDS and lower not in seen:
            seen.append(lower)
    return tuple(seen)


def _code_signals(text: str, tokens: list[str]) -> int:
    signals = 0
    if _CALL_RE.search(text):
        signals += 1
    if _PATH_RE.search(text):
        signals += 1
    if _FILE_EXT_RE.search(text):
        signals += 1
    if _OPERATOR_RE.search(text):
        signals += 1
    if len(tokens) >= 2 and tokens[0].lower() in CODE_KEYWORDS and _IDENT_RE.match(tokens[1]):
        signals += 1
    shaped = sum(1 for t in tokens if _CAMEL_RE.match(t) or _SNAKE_RE.match(t))
    if shaped and shaped * 2 >= len(tokens):
        signals += 1
    return signals


def _has_domain_terms(tokens: list[str]) -> bool:
    for token in tokens:
        if _ACRONYM_RE.match(token):
            return True
        lower = token.lower()
        if lower in TECHNICAL_TERMS or lower.rstrip("s") in TECHNICAL_TERMS:
            return True
    for left, right in zip(tokens, tokens[1:]):
        if left[:1].isupper() and right[:1].isupper():
            return True
    return False


def classify(text: str) -> QueryAnalysis:
    """Classify *text* into a retrieval strategy with a confidence in [0, 1]."""
    text = (text or "").strip()
    tokens = tokenize(text)
    if not tokens:
        return QueryAnalysis(strategy=Strategy.HYBRID, confidence=0.0, rule="empty")

    token_count = len(tokens)
    stopwords = sum(1 for t in tokens if t.lower() in STOPWORDS)
    stopword_ratio = round(stopwords / token_count, 4)
    keywords = extract_keywords(tokens)
    signals = _code_signals(text, tokens)
    domain = _has_domain_terms(tokens)
    interrogative = token_count >= 2 and (tokens[0].lower() in QUESTION_WORDS
                                         or text.endswith("?"))
    natural = interrogative or (stopword_ratio >= 0.3 and token_count >= 4)

    common = dict(
        keywords=keywords,
        has_code_elements=signals > 0,
        has_domain_terms=domain,
        is_natural_language=natural,
        token_count=token_count,
        stopword_ratio=stopword_ratio,
    )

    if signals:
        return QueryAnalysis(Strategy.KEYWORD, min(0.95, 0.5 + 0.1 * signals),
                             "code_syntax", **common)
    if token_count <= 3 and domain:
        return QueryAnalysis(Strategy.KEYWORD_BOOST, 0.85, "domain_terms", **common)
    if natural:
        confidence = 0.5 + stopword_ratio * 0.5 + (0.15 if interrogative else 0.0)
        return QueryAnalysis(Strategy.VECTOR, round(min(0.95, confidence), 4),
                             "interrogative" if interrogative else "natural_language",
                             **common)
    return QueryAnalysis(Strategy.HYBRID, 0.5, "fallback", **common)


def expand_query(text: str) -> str:
    """Append related vocabulary for the first known topic found in *text*."""
    lower = (text or "").lower()
    for key, related in QUERY_EXPANSIONS:
        if key in lower:
            return f"{text} {related}"
    return text
