import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

import sqlglot
from sqlglot import expressions as exp
from sqlglot.errors import ParseError, TokenError

from core.cache_data_model import ValidationIssue
from core.errors import SqlValidationError, ValidationCategory

logger = logging.getLogger(__name__)

DEFAULT_DIALECT = "athena"

# Statements sqlglot can only keep as opaque commands but Athena accepts
PASSTHROUGH_COMMANDS = frozenset({
    "MSCK", "SHOW", "DESCRIBE", "DESC", "EXPLAIN", "USE", "UNLOAD",
    "VACUUM", "OPTIMIZE", "PREPARE", "EXECUTE", "DEALLOCATE",
})

_STATEMENT_TYPE_NAMES = (
    "Query", "Subqueryable", "Select", "Union", "Insert", "Update", "Delete", "Merge",
    "Create", "Drop", "Alter", "AlterTable", "Describe", "Show", "Use", "Set",
    "Command", "TruncateTable", "Analyze", "Values", "Table",
)
STATEMENT_TYPES = tuple(getattr(exp, name) for name in _STATEMENT_TYPE_NAMES if hasattr(exp, name))

_DANGLING_KEYWORDS = ("WHERE", "FROM", "AND", "OR", "ON", "BY", "HAVING", "JOIN", "SELECT", "TABLE")


@dataclass(frozen=True)
class MistakePattern:
    """A common mistake recognized in the statement text (quoted text blanked out)"""
    pattern: re.Pattern
    message: str
    suggestion: str
    definite: bool = False


MISTAKE_PATTERNS: Tuple[MistakePattern, ...] = (
    MistakePattern(
        re.compile(r"^\s*SELECT\s+(?:DISTINCT\s+|ALL\s+)?FROM\b", re.IGNORECASE),
        "SELECT list is empty",
        "List the columns to select, e.g. SELECT * FROM ...",
        definite=True,
    ),
    MistakePattern(
        re.compile(r",\s*FROM\b", re.IGNORECASE),
        "Trailing comma before FROM",
        "Remove the comma after the last selected column",
        definite=True,
    ),
    MistakePattern(
        re.compile(r"\b(%s)\s*$" % "|".join(_DANGLING_KEYWORDS), re.IGNORECASE),
        "Statement ends unexpectedly",
        "Complete the clause or remove the trailing keyword",
        definite=True,
    ),
    MistakePattern(
        re.compile(r"\bFORM\b", re.IGNORECASE),
        "Unexpected keyword FORM",
        "Did you mean FROM?",
    ),
    MistakePattern(
        re.compile(r"^\s*SELECT\b(?:(?!\bFROM\b).)*\bWHERE\b", re.IGNORECASE | re.DOTALL),
        "WHERE clause without FROM",
        "Add a FROM clause naming the table to filter",
    ),
)


def _line_col(text: str, offset: int) -> Tuple[int, int]:
    line = text.count("\n", 0, offset) + 1
    col = offset - (text.rfind("\n", 0, offset) + 1) + 1
    return line, col


def _issue(category: ValidationCategory, message: str, sql: str = "", offset: Optional[int] = None,
           token: Optional[str] = None, suggestion: Optional[str] = None) -> ValidationIssue:
    line = col = None
    if offset is not None:
        line, col = _line_col(sql, offset)
    return ValidationIssue(category, message, token=token, line=line, column=col, suggestion=suggestion)


def blank_quoted(sql: str) -> Tuple[str, Optional[ValidationIssue]]:
    """
    Replace quoted text with spaces (keeping offsets) and check paren balance.
    Returns the blanked text and the first structural issue found, if any.
    """
    chars = list(sql)
    stack: List[int] = []
    quote: Optional[str] = None
    quote_start = 0
    i = 0
    while i < len(sql):
        ch = sql[i]
        if quote:
            if ch == quote:
                # Doubled quote is an escaped quote character
                if quote != "`" and i + 1 < len(sql) and sql[i + 1] == quote:
                    chars[i] = chars[i + 1] = " "
                    i += 2
                    continue
                quote = None
            else:
                chars[i] = " "
        elif sql.startswith("--", i) or sql.startswith("/*", i):
            end = sql.find("\n", i) if ch == "-" else sql.find("*/", i + 2)
            end = len(sql) if end == -1 else (end if ch == "-" else end + 2)
            for j in range(i, end):
                chars[j] = " "
            i = end
            continue
        elif ch in ("'", '"', "`"):
            quote = ch
            quote_start = i
        elif ch == "(":
            stack.append(i)
        elif ch == ")":
            if not stack:
                return "".join(chars), _issue(
                    ValidationCategory.SYNTAX_ERROR, "Unbalanced parentheses: unexpected ')'",
                    sql, i, token=")", suggestion="Remove the extra ')' or add the matching '('")
            stack.pop()
        i += 1

    if quote:
        kind = "string literal" if quote == "'" else "quoted identifier"
        return "".join(chars), _issue(
            ValidationCategory.SYNTAX_ERROR, f"Unterminated {kind}", sql, quote_start,
            token=quote, suggestion=f"Close the {kind} with {quote}")
    if stack:
        return "".join(chars), _issue(
            ValidationCategory.SYNTAX_ERROR, "Unbalanced parentheses: '(' is never closed",
            sql, stack[-1], token="(", suggestion="Add the missing ')'")
    return "".join(chars), None


def _match_pattern(code: str, definite: bool) -> Optional[Tuple[MistakePattern, re.Match]]:
    for mistake in MISTAKE_PATTERNS:
        if mistake.definite != definite:
            continue
        match = mistake.pattern.search(code)
        if match:
            return mistake, match
    return None


def _needs_from(projection: exp.Expression) -> bool:
    """True if a projection references columns, which only make sense with a FROM clause"""
    if projection.find(exp.Subquery, exp.Select) is not None:
        return False
    return projection.find(exp.Column, exp.Star) is not None


class SqlValidator:
    """Local syntax pre-checks against the Athena dialect. No remote calls, no side effects."""

    def __init__(self, dialect: str = DEFAULT_DIALECT) -> None:
        self.dialect = dialect

    def validate(self, sql: str) -> List[exp.Expression]:
        """Return the parsed statements, or raise SqlValidationError"""
        if not sql or not sql.strip().strip(";").strip():
            raise SqlValidationError(_issue(
                ValidationCategory.SYNTAX_ERROR, "Empty statement", suggestion="Provide a SQL statement"))

        code, structural = blank_quoted(sql)
        if structural:
            raise SqlValidationError(structural)

        found = _match_pattern(code.rstrip().rstrip(";"), definite=True)
        if found:
            mistake, match = found
            raise SqlValidationError(_issue(
                ValidationCategory.SYNTAX_ERROR, mistake.message, sql, match.start(),
                token=match.group().strip(), suggestion=mistake.suggestion))

        try:
            statements = [s for s in sqlglot.parse(sql, read=self.dialect) if s is not None]
        except ParseError as e:
            logger.debug(f"Parse failed for {self.dialect} dialect: {e}")
            raise SqlValidationError(self._issue_from_parse_error(sql, code, e), e) from e
        except TokenError as e:
            raise SqlValidationError(_issue(
                ValidationCategory.SYNTAX_ERROR, f"SQL syntax error: {e}",
                suggestion=self._suggest(code)), e) from e

        if not statements:
            raise SqlValidationError(_issue(
                ValidationCategory.SYNTAX_ERROR, "Empty statement", suggestion="Provide a SQL statement"))

        for statement in statements:
            self._check_statement(statement)
        return statements

    def is_valid(self, sql: str) -> bool:
        try:
            self.validate(sql)
        except SqlValidationError:
            return False
        return True

    def _suggest(self, code: str) -> Optional[str]:
        found = _match_pattern(code, definite=False)
        return found[0].suggestion if found else None

    def _issue_from_parse_error(self, sql: str, code: str, error: ParseError) -> ValidationIssue:
        details = error.errors[0] if getattr(error, "errors", None) else {}
        description = details.get("description") or str(error).splitlines()[0]
        return ValidationIssue(
            ValidationCategory.SYNTAX_ERROR,
            f"SQL syntax error: {description}",
            token=details.get("highlight") or None,
            line=details.get("line"),
            column=details.get("col"),
            suggestion=self._suggest(code),
        )

    def _check_statement(self, statement: exp.Expression) -> None:
        if isinstance(statement, exp.Command):
            keyword = str(statement.this or "").upper()
            # sqlglot may keep several leading words, e.g. "MSCK REPAIR"
            if not keyword or keyword.split()[0] not in PASSTHROUGH_COMMANDS:
                raise SqlValidationError(_issue(
                    ValidationCategory.UNSUPPORTED_STATEMENT,
                    f"Unsupported statement: {keyword or statement.sql()}"))
            return

        if not isinstance(statement, STATEMENT_TYPES):
            raise SqlValidationError(_issue(
                ValidationCategory.UNSUPPORTED_STATEMENT,
                f"Not a SQL statement: {statement.sql(dialect=self.dialect)}",
                suggestion="Start the statement with SELECT, WITH, INSERT, CREATE, ..."))

        if isinstance(statement, exp.Select):
            if not statement.expressions:
                raise SqlValidationError(_issue(
                    ValidationCategory.SYNTAX_ERROR, "SELECT list is empty",
                    suggestion="List the columns to select, e.g. SELECT * FROM ..."))

            has_from = statement.args.get("from") or statement.args.get("from_")
            if not has_from and any(_needs_from(p) for p in statement.expressions):
                raise SqlValidationError(_issue(
                    ValidationCategory.SYNTAX_ERROR, "SQL syntax error: SELECT query missing FROM clause",
                    suggestion="Add a FROM clause naming the table to read"))


_default_validator = SqlValidator()


def validate(sql: str) -> List[exp.Expression]:
    """Validate with the default Athena dialect validator"""
    return _default_validator.validate(sql)
