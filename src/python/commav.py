#!/usr/bin/env python3
"""
Comma-v Archive Reader

Reads RCS ",v" archives (one file's complete revision history stored as
an administrative header, per-revision metadata, and a chain of line
diffs) and reconstructs the exact bytes of any stored revision.

File format:
  rcsfile(5), "comma-v grammar", GNU RCS manual.
  Edit scripts use the "diff -n" RCS output format (GNU diffutils manual).

Pipeline:
  - Lexical scanner   bytes -> tokens (ids, nums, @-strings, keywords, ; and :)
  - Grammar parser    tokens -> admin header, delta list, desc, deltatext list
  - Assembler         cross-links deltas and deltatexts into a Document
  - Revision graph    trunk (next) and branch (branches) edges from head
  - Reconstruction    head text + ordered edit scripts -> revision content

Usage:
  python commav.py info <archive>
  python commav.py log  <archive>
  python commav.py co   <archive> [-r REV] [-o OUTPUT]
"""

import argparse
import datetime
import enum
import re
import sys
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union


# ============================================================================
# Revision Numbers
#
# A revision number is a dotted sequence of decimal components.  An even
# number of components names a revision (1.3, 1.3.2.1); an odd number
# names a branch (1, 1.3.2).  Ordering is over the integer components,
# so 1.10 sorts after 1.9.
# ============================================================================

_REVISION_RE = re.compile(r'[0-9]+(?:\.[0-9]+)*\Z')


@dataclass(frozen=True, order=True)
class RevisionNumber:
    """Dotted revision or branch number, e.g. 1.3 or 1.3.2.1."""
    numbers: Tuple[int, ...]

    @classmethod
    def parse(cls, text) -> 'RevisionNumber':
        if isinstance(text, RevisionNumber):
            return text
        if isinstance(text, bytes):
            text = text.decode('ascii', errors='replace')
        if not _REVISION_RE.match(text):
            raise ValueError(f"not a revision number: {text!r}")
        return cls(tuple(int(n) for n in text.split('.')))

    def __str__(self):
        return '.'.join(str(n) for n in self.numbers)

    def __repr__(self):
        return f"RevisionNumber('{self}')"

    @property
    def is_branch(self) -> bool:
        return len(self.numbers) % 2 == 1

    @property
    def is_revision(self) -> bool:
        return not self.is_branch

    @property
    def is_valid_revision(self) -> bool:
        """Non-empty, even length, and every component positive."""
        return (len(self.numbers) > 0 and self.is_revision
                and all(n > 0 for n in self.numbers))

    @property
    def is_trunk(self) -> bool:
        return len(self.numbers) == 2

    @property
    def branch(self) -> 'RevisionNumber':
        """The branch a revision lives on: 1.2.3.4 -> 1.2.3, 1.2 -> 1."""
        return RevisionNumber(self.numbers[:-1])

    @property
    def branch_point(self) -> 'RevisionNumber':
        """Revision a branch grows from: 1.2.3 -> 1.2, 1.2.3.4 -> 1.2."""
        if self.is_branch:
            return RevisionNumber(self.numbers[:-1])
        return RevisionNumber(self.numbers[:-2])

    @property
    def branch_points(self) -> List['RevisionNumber']:
        """Every branch point above this number, outermost first.

        1.2.3.4.5.6.7.8 -> [1.2, 1.2.3.4, 1.2.3.4.5.6]
        """
        return [RevisionNumber(self.numbers[:i])
                for i in range(2, len(self.numbers), 2)]

    def normalized(self) -> 'RevisionNumber':
        """Fold a CVS magic branch number (1.2.0.4) into its branch (1.2.4)."""
        n = self.numbers
        if len(n) > 2 and len(n) % 2 == 0 and n[-2] == 0:
            return RevisionNumber(n[:-2] + n[-1:])
        return self


def _as_revision(value) -> RevisionNumber:
    try:
        return RevisionNumber.parse(value)
    except ValueError as e:
        raise ReconstructionError(str(e)) from None


# ============================================================================
# Archive Records
# ============================================================================

# A newphrase value is the verbatim word list between its keyword and the
# terminating ';'.  Ids and nums are str, @-strings are bytes, ':' is ':'.
Word = Union[str, bytes]
Newphrases = Dict[str, Tuple[Word, ...]]


class KeywordExpansion(enum.Enum):
    """Keyword substitution mode from the admin 'expand' field."""
    DEFAULT = ''
    KV = 'kv'
    KVL = 'kvl'
    K = 'k'
    V = 'v'
    O = 'o'
    B = 'b'


class Direction(enum.Enum):
    """Which way an edit script moves relative to head.

    REVERSE scripts sit on the trunk and turn a newer revision into the
    older one stored below it.  FORWARD scripts sit on branches and turn
    the branch point (or previous branch revision) into the next one.
    Both are stored against their reference buffer, so one routine
    applies either kind.
    """
    REVERSE = 'reverse'
    FORWARD = 'forward'


@dataclass(frozen=True)
class AdminHeader:
    """The administrative block at the top of an archive."""
    head: Optional[RevisionNumber]
    branch: Optional[RevisionNumber] = None
    access: Tuple[str, ...] = ()
    symbols: Dict[str, RevisionNumber] = field(default_factory=dict)
    locks: Dict[str, RevisionNumber] = field(default_factory=dict)
    strict: bool = False
    integrity: Optional[bytes] = None
    comment: Optional[bytes] = None
    expand: KeywordExpansion = KeywordExpansion.DEFAULT
    newphrases: Newphrases = field(default_factory=dict)


@dataclass(frozen=True)
class DeltaMeta:
    """Per-revision metadata: date, author, state, and graph pointers."""
    revision: RevisionNumber
    date: str
    author: str
    state: Optional[str] = None
    branches: Tuple[RevisionNumber, ...] = ()
    next: Optional[RevisionNumber] = None
    commitid: Optional[str] = None
    newphrases: Newphrases = field(default_factory=dict)

    @property
    def timestamp(self) -> datetime.datetime:
        """The dotted date as an aware UTC datetime (two-digit years are 19xx)."""
        parts = [int(p) for p in self.date.split('.')]
        if len(parts) != 6:
            raise ValueError(f"not a Y.m.d.H.M.S date: {self.date!r}")
        if parts[0] < 100:
            parts[0] += 1900
        return datetime.datetime(*parts, tzinfo=datetime.timezone.utc)


@dataclass(frozen=True)
class AddLines:
    """Insert lines after line `line` of the reference buffer (0 = top)."""
    line: int
    lines: Tuple[bytes, ...]

    def __repr__(self):
        return f"a{self.line} {len(self.lines)}"


@dataclass(frozen=True)
class DeleteLines:
    """Delete `count` lines starting at line `line` (1-indexed)."""
    line: int
    count: int

    def __repr__(self):
        return f"d{self.line} {self.count}"


EditCommand = Union[AddLines, DeleteLines]
EditScript = Tuple[EditCommand, ...]


@dataclass(frozen=True)
class DeltaText:
    """Log message and content of one revision.

    `text` is the literal file content for the head revision and an
    edit script for every other revision.
    """
    revision: RevisionNumber
    log: bytes
    text: Union[bytes, EditScript]
    newphrases: Newphrases = field(default_factory=dict)

    @property
    def is_full_text(self) -> bool:
        return isinstance(self.text, bytes)


@dataclass(frozen=True)
class Document:
    """A fully cross-linked archive."""
    admin: AdminHeader
    desc: bytes
    deltas: Dict[RevisionNumber, DeltaMeta]
    texts: Dict[RevisionNumber, DeltaText]

    @property
    def head(self) -> Optional[RevisionNumber]:
        return self.admin.head


@dataclass
class ParseOptions:
    """Options for parsing and assembly."""
    verbose: bool = False
    allow_orphans: bool = True
    require_final_newline: bool = False


# ============================================================================
# Errors
#
# Every failure derives from ArchiveError (a ValueError), so callers that
# only care whether an archive is usable can catch a single type.
# ============================================================================

class ArchiveError(ValueError):
    """Base class for all archive reading failures."""


class LexError(ArchiveError):
    """A byte sequence that is not a lexeme, or an unterminated string."""

    def __init__(self, message: str, offset: int):
        super().__init__(f"{message} at byte {offset}")
        self.offset = offset


class ArchiveSyntaxError(ArchiveError):
    """The token stream does not follow the archive grammar."""

    def __init__(self, expected: str, found: str, offset: int):
        super().__init__(f"expected {expected}, found {found} at byte {offset}")
        self.expected = expected
        self.found = found
        self.offset = offset


class SemanticError(ArchiveError):
    """Well-formed archive whose parts do not agree with each other."""

    def __init__(self, message: str, revision=None):
        if revision is not None:
            message = f"{message}: {revision}"
        super().__init__(message)
        self.revision = revision


class ReconstructionError(ArchiveError):
    """A revision cannot be rebuilt; the Document itself stays valid."""

    def __init__(self, message: str, revision=None):
        if revision is not None:
            message = f"{message}: {revision}"
        super().__init__(message)
        self.revision = revision


# ============================================================================
# Lexical Scanner (rcsfile(5), "Lexical elements")
#
#   whitespace ::= bytes 010-015 and 040, skipped between lexemes
#   special    ::= "$" | "," | "." | ":" | ";" | "@"
#   idchar     ::= visible graphic byte (041-176, 240-377) except special
#   num        ::= {digit | "."}+
#   id         ::= {idchar | "."}+ with at least one non-digit
#   string     ::= "@" {any byte, with @ doubled}* "@"
#
# Ids that spell a reserved word come back as KEYWORD tokens.
# ============================================================================

class TokenKind(enum.Enum):
    ID = 'id'
    NUM = 'num'
    STRING = 'string'
    KEYWORD = 'keyword'
    SEMI = ';'
    COLON = ':'


KEYWORDS = frozenset((
    'head', 'branch', 'access', 'symbols', 'locks', 'strict', 'integrity',
    'comment', 'expand', 'date', 'author', 'state', 'branches', 'next',
    'commitid', 'desc', 'log', 'text',
))

_WHITESPACE_RE = re.compile(rb'[\x08-\x0d ]*')
_WORD_RE = re.compile(rb'[\x21-\x23\x25-\x2b\x2d-\x39\x3c-\x3f\x41-\x7e\xa0-\xff]+')
_DIGITS_RE = re.compile(rb'[0-9.]+\Z')


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    value: Word
    offset: int
    end: int

    def describe(self) -> str:
        if self.kind is TokenKind.STRING:
            return f"string at {self.offset}"
        return f"{self.kind.value} {self.value!r}"


def _scan_string(data: bytes, start: int) -> Token:
    chunks = []
    pos = start + 1
    while True:
        at = data.find(b'@', pos)
        if at < 0:
            raise LexError("unterminated string", start)
        chunks.append(data[pos:at])
        if data[at + 1:at + 2] == b'@':
            chunks.append(b'@')
            pos = at + 2
        else:
            return Token(TokenKind.STRING, b''.join(chunks), start, at + 1)


def next_token(data: bytes, pos: int = 0) -> Tuple[Optional[Token], int]:
    """Scan one lexeme at or after pos.

    Returns (token, end offset), or (None, len(data)) once only whitespace
    remains.
    """
    pos = _WHITESPACE_RE.match(data, pos).end()
    if pos >= len(data):
        return None, len(data)
    c = data[pos]
    if c == 0x3b:
        return Token(TokenKind.SEMI, ';', pos, pos + 1), pos + 1
    if c == 0x3a:
        return Token(TokenKind.COLON, ':', pos, pos + 1), pos + 1
    if c == 0x40:
        tok = _scan_string(data, pos)
        return tok, tok.end
    m = _WORD_RE.match(data, pos)
    if m is None:
        raise LexError(f"unexpected byte 0x{c:02x}", pos)
    word = m.group()
    text = word.decode('latin-1')
    if _DIGITS_RE.match(word):
        kind = TokenKind.NUM
    elif text in KEYWORDS:
        kind = TokenKind.KEYWORD
    else:
        kind = TokenKind.ID
    return Token(kind, text, pos, m.end()), m.end()


def tokenize(data: bytes):
    """Yield every token in data."""
    pos = 0
    while True:
        tok, pos = next_token(data, pos)
        if tok is None:
            return
        yield tok


# ============================================================================
# Grammar Parser (rcsfile(5), "Syntax")
#
#   rcstext   ::= admin {delta}* desc {deltatext}*
#   admin     ::= "head" {num}; {"branch" {num};} "access" {id}*;
#                 "symbols" {sym ":" num}*; "locks" {id ":" num}*;
#                 {"strict";} {"integrity" {intstring};}
#                 {"comment" {string};} {"expand" {string};} {newphrase}*
#   delta     ::= num "date" num; "author" id; "state" {id};
#                 "branches" {num}*; "next" {num}; {"commitid" sym;}
#                 {newphrase}*
#   desc      ::= "desc" string
#   deltatext ::= num "log" string {newphrase}* "text" string {newphrase}*
#   newphrase ::= id word* ";"     (word ::= id | num | string | ":")
#
# The parser is purely syntactic; deltatext bodies stay raw bytes until
# the assembler knows which revision is head.
# ============================================================================

@dataclass(frozen=True)
class RawDeltaText:
    """A deltatext block before its text is interpreted."""
    revision: RevisionNumber
    log: bytes
    text: bytes
    text_offset: int
    newphrases: Newphrases = field(default_factory=dict)


@dataclass(frozen=True)
class ParsedArchive:
    """Output of the grammar parser, in archive order."""
    admin: AdminHeader
    deltas: Tuple[DeltaMeta, ...]
    desc: bytes
    texts: Tuple[RawDeltaText, ...]


class _Parser:
    """Recursive-descent parser over a token list."""

    def __init__(self, tokens: List[Token], size: int):
        self.tokens = tokens
        self.pos = 0
        self.size = size

    # -- token stream

    def peek(self) -> Optional[Token]:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return None

    def fail(self, expected: str):
        tok = self.peek()
        if tok is None:
            raise ArchiveSyntaxError(expected, "end of input", self.size)
        raise ArchiveSyntaxError(expected, tok.describe(), tok.offset)

    def take(self, expected: str, *kinds: TokenKind) -> Token:
        tok = self.peek()
        if tok is None or tok.kind not in kinds:
            self.fail(expected)
        self.pos += 1
        return tok

    def at(self, *kinds: TokenKind) -> bool:
        tok = self.peek()
        return tok is not None and tok.kind in kinds

    def at_keyword(self, word: str) -> bool:
        tok = self.peek()
        return (tok is not None and tok.kind is TokenKind.KEYWORD
                and tok.value == word)

    def keyword(self, word: str) -> None:
        if not self.at_keyword(word):
            self.fail(f"'{word}'")
        self.pos += 1

    def semicolon(self) -> None:
        self.take("';'", TokenKind.SEMI)

    def num(self, expected: str = "revision number") -> RevisionNumber:
        tok = self.take(expected, TokenKind.NUM)
        try:
            return RevisionNumber.parse(tok.value)
        except ValueError:
            raise ArchiveSyntaxError(expected, tok.describe(), tok.offset) from None

    def optional_num(self) -> Optional[RevisionNumber]:
        return self.num() if self.at(TokenKind.NUM) else None

    def identifier(self, expected: str = "identifier") -> str:
        return self.take(expected, TokenKind.ID, TokenKind.KEYWORD).value

    def string(self) -> bytes:
        return self.take("string", TokenKind.STRING).value

    def optional_string(self) -> Optional[bytes]:
        return self.string() if self.at(TokenKind.STRING) else None

    def pairs(self, what: str) -> Dict[str, RevisionNumber]:
        """{name ":" num}* ";" with distinct names."""
        result = {}
        while not self.at(TokenKind.SEMI):
            name = self.identifier(what)
            self.take("':'", TokenKind.COLON)
            number = self.num()
            if name in result:
                raise SemanticError(f"duplicate {what} {name!r}", number)
            result[name] = number
        self.semicolon()
        return result

    def newphrases(self) -> Newphrases:
        phrases = {}
        while self.at(TokenKind.ID):
            key = self.peek()
            self.pos += 1
            words = []
            while not self.at(TokenKind.SEMI):
                tok = self.take("';'", TokenKind.ID, TokenKind.NUM,
                                TokenKind.STRING, TokenKind.KEYWORD,
                                TokenKind.COLON)
                words.append(tok.value)
            self.semicolon()
            if key.value in phrases:
                raise ArchiveSyntaxError("distinct newphrase keyword",
                                         key.describe(), key.offset)
            phrases[key.value] = tuple(words)
        return phrases

    # -- grammar

    def admin(self) -> AdminHeader:
        self.keyword('head')
        head = self.optional_num()
        self.semicolon()
        branch = None
        if self.at_keyword('branch'):
            self.pos += 1
            branch = self.optional_num()
            self.semicolon()
        self.keyword('access')
        access = []
        while not self.at(TokenKind.SEMI):
            access.append(self.identifier("access list identifier"))
        self.semicolon()
        self.keyword('symbols')
        symbols = self.pairs("symbol")
        self.keyword('locks')
        locks = self.pairs("locker")
        strict = False
        if self.at_keyword('strict'):
            self.pos += 1
            self.semicolon()
            strict = True
        integrity = None
        if self.at_keyword('integrity'):
            self.pos += 1
            integrity = self.optional_string()
            self.semicolon()
        comment = None
        if self.at_keyword('comment'):
            self.pos += 1
            comment = self.optional_string()
            self.semicolon()
        expand = KeywordExpansion.DEFAULT
        if self.at_keyword('expand'):
            self.pos += 1
            tok = self.peek()
            mode = self.optional_string()
            self.semicolon()
            if mode is not None:
                try:
                    expand = KeywordExpansion(mode.decode('latin-1'))
                except ValueError:
                    raise ArchiveSyntaxError("keyword expansion mode",
                                             repr(mode), tok.offset) from None
        return AdminHeader(head=head, branch=branch, access=tuple(access),
                           symbols=symbols, locks=locks, strict=strict,
                           integrity=integrity, comment=comment,
                           expand=expand, newphrases=self.newphrases())

    def delta(self) -> DeltaMeta:
        revision = self.num()
        self.keyword('date')
        date = self.take("date", TokenKind.NUM).value
        self.semicolon()
        self.keyword('author')
        author = self.identifier("author")
        self.semicolon()
        self.keyword('state')
        state = None
        if not self.at(TokenKind.SEMI):
            state = self.identifier("state")
        self.semicolon()
        self.keyword('branches')
        branches = []
        while self.at(TokenKind.NUM):
            branches.append(self.num())
        self.semicolon()
        self.keyword('next')
        nxt = self.optional_num()
        self.semicolon()
        commitid = None
        if self.at_keyword('commitid'):
            self.pos += 1
            commitid = self.identifier("commitid")
            self.semicolon()
        return DeltaMeta(revision=revision, date=date, author=author,
                         state=state, branches=tuple(branches), next=nxt,
                         commitid=commitid, newphrases=self.newphrases())

    def deltatext(self) -> RawDeltaText:
        revision = self.num()
        self.keyword('log')
        log = self.string()
        phrases = self.newphrases()
        self.keyword('text')
        tok = self.take("string", TokenKind.STRING)
        for key, words in self.newphrases().items():
            if key in phrases:
                raise ArchiveSyntaxError("distinct newphrase keyword",
                                         repr(key), tok.end)
            phrases[key] = words
        return RawDeltaText(revision=revision, log=log, text=tok.value,
                            text_offset=tok.offset + 1, newphrases=phrases)

    def archive(self) -> ParsedArchive:
        admin = self.admin()
        deltas = []
        while self.at(TokenKind.NUM):
            deltas.append(self.delta())
        self.keyword('desc')
        desc = self.string()
        texts = []
        while self.peek() is not None:
            if not self.at(TokenKind.NUM):
                self.fail("deltatext revision number or end of input")
            texts.append(self.deltatext())
        return ParsedArchive(admin=admin, deltas=tuple(deltas), desc=desc,
                             texts=tuple(texts))


def parse_archive(data: bytes, opts: ParseOptions = None) -> ParsedArchive:
    """Scan and parse an archive without cross-checking its parts."""
    if opts is None:
        opts = ParseOptions()
    data = bytes(data)
    tokens = list(tokenize(data))
    parser = _Parser(tokens, len(data))
    parsed = parser.archive()
    if opts.require_final_newline:
        tail = tokens[-1].end if tokens else 0
        if b'\n' not in data[tail:]:
            raise ArchiveSyntaxError("line terminator", "end of input", len(data))
    if opts.verbose:
        print(f"parse: {len(data):,} bytes, {len(tokens):,} tokens, "
              f"{len(parsed.deltas)} deltas, {len(parsed.texts)} deltatexts",
              file=sys.stderr)
    return parsed


# ============================================================================
# Edit Scripts (RCS diff format, "diff -n")
#
#   a<line> <count>\n  followed by <count> literal lines
#   d<line> <count>\n
#
# Line numbers refer to the reference buffer as it was before the script
# started; commands appear in ascending line order.  Lines keep their
# terminators, so CRLF text and a missing final newline survive exactly.
# ============================================================================

_COMMAND_RE = re.compile(rb'([ad])[\x08-\x0d ]*([0-9]+)[\x08-\x0d ]+([0-9]+)[ \t]*(?:\r?\n|\Z)')


def split_lines(data: bytes) -> List[bytes]:
    """Split on b'\\n', keeping terminators; a trailing partial line is kept."""
    lines = data.split(b'\n')
    tail = lines.pop()
    result = [line + b'\n' for line in lines]
    if tail:
        result.append(tail)
    return result


def parse_script(text: bytes, offset: int = 0) -> EditScript:
    """Decode an edit script.  offset is where text starts in the archive."""
    commands: List[EditCommand] = []
    pos = 0
    while pos < len(text):
        m = _COMMAND_RE.match(text, pos)
        if m is None:
            found = text[pos:pos + 16].split(b'\n')[0]
            raise ArchiveSyntaxError("edit command", repr(found), offset + pos)
        op, line, count = m.group(1), int(m.group(2)), int(m.group(3))
        pos = m.end()
        if op == b'd':
            commands.append(DeleteLines(line=line, count=count))
            continue
        lines = []
        for _ in range(count):
            if pos >= len(text):
                raise ArchiveSyntaxError(f"{count} lines after 'a{line} {count}'",
                                         f"{len(lines)}", offset + pos)
            nl = text.find(b'\n', pos)
            end = len(text) if nl < 0 else nl + 1
            lines.append(text[pos:end])
            pos = end
        commands.append(AddLines(line=line, lines=tuple(lines)))
    return tuple(commands)


# ============================================================================
# Document Assembly
# ============================================================================

def assemble(parsed: ParsedArchive, opts: ParseOptions = None) -> Document:
    """Index deltas and deltatexts by revision and check that they agree."""
    if opts is None:
        opts = ParseOptions()
    head = parsed.admin.head

    deltas: Dict[RevisionNumber, DeltaMeta] = {}
    for meta in parsed.deltas:
        if meta.revision in deltas:
            raise SemanticError("duplicate delta", meta.revision)
        deltas[meta.revision] = meta
    if head is not None and deltas and head not in deltas:
        raise SemanticError("head revision has no delta", head)

    texts: Dict[RevisionNumber, DeltaText] = {}
    for raw in parsed.texts:
        if raw.revision in texts:
            raise SemanticError("duplicate deltatext", raw.revision)
        if raw.revision not in deltas:
            raise SemanticError("deltatext without delta", raw.revision)
        if raw.revision == head:
            body = raw.text
        else:
            body = parse_script(raw.text, raw.text_offset)
        texts[raw.revision] = DeltaText(revision=raw.revision, log=raw.log,
                                        text=body, newphrases=raw.newphrases)

    for rev, meta in deltas.items():
        if rev not in texts:
            raise SemanticError("delta without deltatext", rev)
        if meta.next is not None and meta.next not in deltas:
            raise SemanticError(f"next of {rev} names a missing revision", meta.next)
        for b in meta.branches:
            if b not in deltas:
                raise SemanticError(f"branches of {rev} names a missing revision", b)

    document = Document(admin=parsed.admin, desc=parsed.desc,
                        deltas=deltas, texts=texts)
    graph = build_graph(document)
    if graph.orphans and not opts.allow_orphans:
        raise SemanticError("revision unreachable from head", graph.orphans[0])
    if opts.verbose:
        print(f"assemble: head={head}, {len(deltas)} revisions, "
              f"{len(graph.orphans)} orphans", file=sys.stderr)
    return document


def parse(data: bytes, verbose: bool = False,
          opts: ParseOptions = None) -> Document:
    """Parse archive bytes into a checked Document."""
    if opts is None:
        opts = ParseOptions(verbose=verbose)
    return assemble(parse_archive(data, opts), opts)


# ============================================================================
# Revision Graph
#
# Rooted at head.  The main line follows `next` from head; every other
# revision hangs off a `branches` entry and continues along its own `next`
# chain.  Trunk steps below head carry reverse deltas; every step taken
# after leaving the main line carries a forward delta.
#
# A `branches` entry only starts a branch when it names a revision that is
# neither reached already nor the `next` of another revision; any other
# entry is redundant and skipped.  A `next` chain that runs into a revision
# already reached means the pointers form a cycle or a merge, which the
# archive format cannot express; that is a SemanticError rather than an
# endless walk.  Revisions never reached are orphans.
# ============================================================================

class EdgeKind(enum.Enum):
    NEXT = 'next'
    BRANCH = 'branches'


@dataclass
class GraphNode:
    revision: RevisionNumber
    parent: Optional[RevisionNumber] = None
    edge: Optional[EdgeKind] = None
    direction: Optional[Direction] = None
    on_main_line: bool = False
    children: List[RevisionNumber] = field(default_factory=list)


@dataclass
class RevisionGraph:
    root: Optional[RevisionNumber]
    nodes: Dict[RevisionNumber, GraphNode]
    orphans: Tuple[RevisionNumber, ...]

    def main_line(self) -> List[RevisionNumber]:
        return [rev for rev, node in self.nodes.items() if node.on_main_line]

    def path_to(self, revision: RevisionNumber) -> List[GraphNode]:
        """Nodes from head down to revision, head first."""
        if revision not in self.nodes:
            raise ReconstructionError("revision unreachable from head", revision)
        path = []
        rev = revision
        while rev is not None:
            node = self.nodes[rev]
            path.append(node)
            rev = node.parent
        path.reverse()
        return path


def _follow(deltas, nodes, pending, start, parent, direction, main_line):
    """Attach start and its `next` chain under parent."""
    rev, edge = start, (EdgeKind.NEXT if main_line else EdgeKind.BRANCH)
    while rev is not None:
        if rev in nodes:
            raise SemanticError("revision reached twice while walking from head", rev)
        if rev not in deltas:
            raise SemanticError("pointer to a missing revision", rev)
        nodes[rev] = GraphNode(revision=rev, parent=parent,
                               edge=edge if parent is not None else None,
                               direction=direction if parent is not None else None,
                               on_main_line=main_line)
        if parent is not None:
            nodes[parent].children.append(rev)
        pending.append(rev)
        parent, rev, edge = rev, deltas[rev].next, EdgeKind.NEXT


def build_graph(document: Document) -> RevisionGraph:
    """Derive the head-rooted revision tree of a document."""
    deltas = document.deltas
    head = document.admin.head
    nodes: Dict[RevisionNumber, GraphNode] = {}
    if head is None or head not in deltas:
        return RevisionGraph(root=None, nodes=nodes, orphans=tuple(sorted(deltas)))

    chained = {meta.next for meta in deltas.values() if meta.next is not None}
    pending = deque()
    _follow(deltas, nodes, pending, head, None, Direction.REVERSE, True)
    while pending:
        point = pending.popleft()
        for root in deltas[point].branches:
            if root in nodes or root in chained:
                continue
            _follow(deltas, nodes, pending, root, point, Direction.FORWARD, False)

    orphans = tuple(sorted(rev for rev in deltas if rev not in nodes))
    return RevisionGraph(root=head, nodes=nodes, orphans=orphans)


# ============================================================================
# Reconstruction
#
# Seed a line buffer with head's literal text, then walk the graph path
# from head to the target, applying each revision's script to the content
# of its parent.  Scripts are applied with a running offset: a delete
# shifts later positions up by its count and an insert shifts them down.
# ============================================================================

@dataclass(frozen=True)
class Step:
    """One script application on the way from head to a revision."""
    revision: RevisionNumber
    script: EditScript
    direction: Direction


def apply_script(lines: List[bytes], script: EditScript,
                 direction: Direction = Direction.REVERSE,
                 revision: RevisionNumber = None) -> List[bytes]:
    """Apply an edit script to a copy of lines and return the result.

    Raises ReconstructionError when a command addresses a line outside
    the reference buffer or goes back over lines an earlier command
    already consumed.
    """
    where = f"{direction.value} delta {revision}" if revision else f"{direction.value} delta"
    buf = list(lines)
    size = len(lines)
    offset = 0
    floor = 0   # reference lines already passed
    for cmd in script:
        if isinstance(cmd, DeleteLines):
            start = cmd.line - 1
            if cmd.line < 1 or start + cmd.count > size:
                raise ReconstructionError(
                    f"{where}: {cmd!r} outside {size} lines")
            if start < floor:
                raise ReconstructionError(f"{where}: {cmd!r} out of order")
            pos = start + offset
            del buf[pos:pos + cmd.count]
            offset -= cmd.count
            floor = start + cmd.count
        elif isinstance(cmd, AddLines):
            if cmd.line > size:
                raise ReconstructionError(
                    f"{where}: {cmd!r} outside {size} lines")
            if cmd.line < floor:
                raise ReconstructionError(f"{where}: {cmd!r} out of order")
            pos = cmd.line + offset
            buf[pos:pos] = cmd.lines
            offset += len(cmd.lines)
            floor = cmd.line
    return buf


def reconstruction_path(document: Document, revision,
                        graph: RevisionGraph = None) -> List[Step]:
    """The ordered script applications that turn head into revision."""
    revision = _as_revision(revision)
    if revision not in document.deltas:
        raise ReconstructionError("no such revision", revision)
    if graph is None:
        graph = build_graph(document)
    steps = []
    for node in graph.path_to(revision)[1:]:
        text = document.texts[node.revision].text
        if isinstance(text, bytes):
            raise ReconstructionError("full text stored below head", node.revision)
        steps.append(Step(revision=node.revision, script=text,
                          direction=node.direction))
    return steps


def reconstruct(document: Document, revision, verbose: bool = False) -> bytes:
    """Rebuild the exact content of revision."""
    revision = _as_revision(revision)
    head = document.admin.head
    if head is None or head not in document.texts:
        raise ReconstructionError("archive has no head revision", revision)
    seed = document.texts[head].text
    if not isinstance(seed, bytes):
        raise ReconstructionError("head revision has no full text", head)

    steps = reconstruction_path(document, revision)
    lines = split_lines(seed)
    if verbose:
        print(f"reconstruct {revision}: seeded from {head} "
              f"({len(lines)} lines), {len(steps)} steps", file=sys.stderr)
    for i, step in enumerate(steps, 1):
        lines = apply_script(lines, step.script, step.direction, step.revision)
        if verbose:
            s = script_summary(step.script)
            print(f"  step {i}/{len(steps)}: {step.revision} ({step.direction.value}) "
                  f"+{s['lines_added']} -{s['lines_deleted']} -> {len(lines)} lines",
                  file=sys.stderr)
    return b''.join(lines)


# ============================================================================
# Revision Resolution
#
# Maps what a user asks for (nothing, a symbol, a branch, a revision) to a
# concrete revision number.  Kept apart from reconstruct() so the default
# branch rule can be tested and replaced on its own.
# ============================================================================

def branch_tip(document: Document, branch: RevisionNumber) -> RevisionNumber:
    """Latest revision on a branch.

    A one-component branch such as 1 selects the highest trunk revision
    1.x; deeper branches are found through their branch point.
    """
    if len(branch.numbers) == 1:
        trunk = [rev for rev in document.deltas
                 if rev.is_trunk and rev.numbers[0] == branch.numbers[0]]
        if not trunk:
            raise ReconstructionError("no revisions on branch", branch)
        return max(trunk)
    point = document.deltas.get(branch.branch_point)
    if point is None:
        raise ReconstructionError("branch point missing", branch.branch_point)
    for root in point.branches:
        if root.branch != branch:
            continue
        rev, seen = root, set()
        while document.deltas[rev].next is not None:
            seen.add(rev)
            rev = document.deltas[rev].next
            if rev in seen:
                raise ReconstructionError("cycle on branch", branch)
        return rev
    raise ReconstructionError("no revisions on branch", branch)


def resolve_revision(document: Document, rev=None) -> RevisionNumber:
    """Turn a request into a revision number.

    None selects the tip of the default branch when the archive names one,
    otherwise head.  Strings are tried as symbolic names first, then as
    dotted numbers.  Branch numbers select their latest revision.
    """
    admin = document.admin
    if rev is None:
        if admin.branch is not None:
            return branch_tip(document, admin.branch)
        if admin.head is None:
            raise ReconstructionError("archive has no head revision")
        return admin.head
    if isinstance(rev, str) and rev in admin.symbols:
        number = admin.symbols[rev]
    else:
        try:
            number = RevisionNumber.parse(rev)
        except ValueError:
            raise ReconstructionError("unknown symbolic name", rev) from None
    number = number.normalized()
    if number.is_branch:
        return branch_tip(document, number)
    if number not in document.deltas:
        raise ReconstructionError("no such revision", number)
    return number


def checkout(document: Document, rev=None, verbose: bool = False) -> bytes:
    """Resolve rev (see resolve_revision) and reconstruct it."""
    return reconstruct(document, resolve_revision(document, rev), verbose=verbose)


# ============================================================================
# Summaries
# ============================================================================

def script_summary(script: EditScript) -> dict:
    """Return summary statistics for an edit script."""
    adds = [c for c in script if isinstance(c, AddLines)]
    deletes = [c for c in script if isinstance(c, DeleteLines)]
    return {
        'num_commands': len(script),
        'num_adds': len(adds),
        'num_deletes': len(deletes),
        'lines_added': sum(len(c.lines) for c in adds),
        'lines_deleted': sum(c.count for c in deletes),
    }


def document_summary(document: Document) -> dict:
    """Return summary statistics for a document."""
    graph = build_graph(document)
    return {
        'head': document.admin.head,
        'num_revisions': len(document.deltas),
        'num_trunk': len(graph.main_line()),
        'num_branches': sum(len(m.branches) for m in document.deltas.values()),
        'num_symbols': len(document.admin.symbols),
        'orphans': graph.orphans,
    }


# ============================================================================
# CLI
# ============================================================================

def _show(data: bytes) -> str:
    return data.decode('utf-8', errors='replace')


def _load(args) -> Document:
    with open(args.archive, 'rb') as f:
        data = f.read()
    try:
        return parse(data, verbose=args.verbose)
    except ArchiveError as e:
        raise SystemExit(f"error: {args.archive}: {e}")


def cmd_info(args):
    doc = _load(args)
    admin = doc.admin
    stats = document_summary(doc)
    print(f"Archive:      {args.archive}")
    print(f"Head:         {admin.head or '(none)'}")
    if admin.branch is not None:
        print(f"Branch:       {admin.branch}")
    print(f"Access:       {' '.join(admin.access) or '(everyone)'}")
    print(f"Locking:      {'strict' if admin.strict else 'non-strict'}")
    print(f"Expand:       {admin.expand.value or 'kv (default)'}")
    if admin.comment is not None:
        print(f"Comment:      {_show(admin.comment)!r}")
    print(f"Revisions:    {stats['num_revisions']} "
          f"({stats['num_trunk']} trunk, {stats['num_branches']} branches)")
    if stats['orphans']:
        print(f"Orphans:      {' '.join(str(r) for r in stats['orphans'])}")
    print(f"Symbols:      {stats['num_symbols']}")
    for name, number in admin.symbols.items():
        print(f"  {name}: {number}")
    for owner, number in admin.locks.items():
        print(f"Locked:       {number} by {owner}")
    for key, words in admin.newphrases.items():
        print(f"Extension:    {key} ({len(words)} words)")
    print(f"Description:  {_show(doc.desc).rstrip()}")


def _show_date(meta: DeltaMeta) -> str:
    try:
        return f"{meta.timestamp:%Y/%m/%d %H:%M:%S}"
    except ValueError:
        return meta.date


def cmd_log(args):
    doc = _load(args)
    graph = build_graph(doc)
    # head, the main line, then branches as reached, then orphans
    for rev in list(graph.nodes) + list(graph.orphans):
        meta = doc.deltas[rev]
        print('-' * 28)
        print(f"revision {rev}")
        print(f"date: {_show_date(meta)};  author: {meta.author};  "
              f"state: {meta.state or ''};")
        if meta.branches:
            print(f"branches:  {';  '.join(str(b) for b in meta.branches)};")
        if meta.next is not None:
            print(f"next: {meta.next};")
        if meta.commitid:
            print(f"commitid: {meta.commitid};")
        print(_show(doc.texts[rev].log).rstrip('\n'))
    print('=' * 77)


def cmd_co(args):
    doc = _load(args)
    try:
        rev = resolve_revision(doc, args.revision)
        data = reconstruct(doc, rev, verbose=args.verbose)
    except ArchiveError as e:
        raise SystemExit(f"error: {args.archive}: {e}")
    if args.output:
        with open(args.output, 'wb') as f:
            f.write(data)
        print(f"{args.archive}  -->  {args.output}", file=sys.stderr)
    else:
        sys.stdout.buffer.write(data)
        sys.stdout.flush()
    print(f"revision {rev}", file=sys.stderr)


def main():
    ap = argparse.ArgumentParser(
        description='Read RCS comma-v archives and reconstruct revisions')
    sub = ap.add_subparsers(dest='command')

    inf = sub.add_parser('info', help='Show the administrative header')
    inf.add_argument('archive', help='Archive file (,v)')
    inf.set_defaults(func=cmd_info)

    lg = sub.add_parser('log', help='Show per-revision metadata and log messages')
    lg.add_argument('archive', help='Archive file (,v)')
    lg.set_defaults(func=cmd_log)

    co = sub.add_parser('co', help='Reconstruct a revision')
    co.add_argument('archive', help='Archive file (,v)')
    co.add_argument('-r', '--revision', default=None,
                    help='Revision, branch or symbolic name (default: head '
                         'or tip of the default branch)')
    co.add_argument('-o', '--output', default=None,
                    help='Output file (default: stdout)')
    co.set_defaults(func=cmd_co)

    for p in (inf, lg, co):
        p.add_argument('--verbose', action='store_true',
                       help='Print diagnostic messages to stderr')

    args = ap.parse_args()
    if args.command is None:
        ap.print_help()
        sys.exit(1)
    args.func(args)


# ============================================================================

if __name__ == '__main__':
    main()
