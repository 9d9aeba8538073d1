"""
Cache key derivation for query requests.

Normalization policy (version 2). Existing cache entries depend on these rules, so
any change must bump NORMALIZATION_POLICY_VERSION:

  1. Leading and trailing whitespace is trimmed.
  2. Trailing semicolons (and whitespace between them) are stripped.
  3. Whitespace runs outside quoted text collapse to a single space. Single-quoted
     string literals and double-quoted or backtick identifiers are kept verbatim.
  4. Words outside quoted text that appear in SQL_KEYWORDS are upper-cased.
     Identifier case is never changed.
  5. Catalog, database, workgroup and output location are included verbatim.
  6. Comments outside quoted text (`-- ...` to end of line, `/* ... */`) are
     dropped and count as whitespace. A line comment ends at its newline, so the
     code after it is never folded into the comment.

The normalized statement and context are serialized as canonical JSON, so field
boundaries cannot shift between values, and hashed with SHA-256.
"""
import hashlib
import json
import re
from typing import List

from core.cache_data_model import Fingerprint, QueryRequest

NORMALIZATION_POLICY_VERSION = 2

# Unchanged since policy version 1. Do not edit without bumping the version.
SQL_KEYWORDS = frozenset("""
    ALL ALTER AND ANY ARRAY AS ASC BETWEEN BY CASE CAST CREATE CROSS CUBE CURRENT
    DATABASE DELETE DESC DESCRIBE DISTINCT DROP ELSE END ESCAPE EXCEPT EXISTS EXPLAIN
    EXTERNAL FALSE FETCH FIRST FOLLOWING FOR FROM FULL GROUP GROUPING HAVING IF IN INNER
    INSERT INTERSECT INTERVAL INTO IS JOIN LATERAL LEFT LIKE LIMIT MAP MERGE NATURAL
    NEXT NOT NULL NULLS OFFSET ON ONLY OR ORDER OUTER OVER PARTITION PRECEDING RANGE
    RECURSIVE RIGHT ROLLUP ROW ROWS SELECT SET SHOW TABLE TABLES TABLESAMPLE THEN TIES
    TO TRUE TRY_CAST UNBOUNDED UNION UNLOAD UNNEST UPDATE USING VALUES VIEW WHEN WHERE
    WINDOW WITH
""".split())

_TOKEN = re.compile(
    r"""
    (?P<quoted>'(?:[^']|'')*'?|"(?:[^"]|"")*"?|`[^`]*`?)
    |(?P<comment>--[^\n]*|/\*.*?(?:\*/|\Z))
    |(?P<space>\s+)
    |(?P<word>[A-Za-z_][A-Za-z0-9_]*)
    |(?P<other>.)
    """,
    re.VERBOSE | re.DOTALL,
)
_TRAILING_TERMINATORS = re.compile(r"[\s;]+$")


def normalize_sql(sql: str) -> str:
    """Apply the normalization policy to a statement"""
    pieces: List[str] = []
    for match in _TOKEN.finditer(sql.strip()):
        kind = match.lastgroup
        value = match.group()
        if kind in ("space", "comment"):
            if not pieces or pieces[-1] != " ":
                pieces.append(" ")
        elif kind == "word" and value.upper() in SQL_KEYWORDS:
            pieces.append(value.upper())
        else:
            pieces.append(value)
    return _TRAILING_TERMINATORS.sub("", "".join(pieces)).strip()


def fingerprint(request: QueryRequest) -> Fingerprint:
    """Derive the cache key for a request. Pure: same request, same fingerprint."""
    payload = {
        "version": NORMALIZATION_POLICY_VERSION,
        "sql": normalize_sql(request.sql),
        "catalog": request.catalog,
        "database": request.database,
        "workgroup": request.workgroup,
        "output_location": request.output_location,
    }
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return Fingerprint(
        digest=hashlib.sha256(encoded.encode("utf-8")).hexdigest(),
        policy_version=NORMALIZATION_POLICY_VERSION,
    )
