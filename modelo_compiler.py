"""MODELO compiler front end: lexer, scoped symbol table, recursive-descent parser and semantic analysis."""

from __future__ import annotations

import logging
import string
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum, auto
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Diagnostics and errors


@dataclass
class Diagnostic:
	code: str
	message: str
	line: Optional[int] = None
	column: Optional[int] = None
	hint: Optional[str] = None
	stage: str = "compile"


class CompilationError(Exception):
	"""Base class for every fault raised by the pipeline.

	Each error carries a machine-readable ``code`` (E1xx lexical, E2xx syntax,
	E3xx semantic), a human-readable message and, where known, the source
	position of the offending token or node.
	"""

	stage = "compile"
	default_code = "E000"

	def __init__(
		self,
		message: str,
		line: Optional[int] = None,
		column: Optional[int] = None,
		*,
		code: Optional[str] = None,
		hint: Optional[str] = None,
	) -> None:
		super().__init__(message)
		self.message = message
		self.line = line
		self.column = column
		self.code = code or self.default_code
		self.hint = hint

	def __str__(self) -> str:
		if self.line is None:
			return f"[{self.code}] {self.message}"
		return f"[{self.code}] line {self.line}, column {self.column}: {self.message}"

	def to_diagnostic(self) -> Diagnostic:
		return Diagnostic(self.code, self.message, self.line, self.column, self.hint, self.stage)

	def to_diagnostics(self) -> List[Diagnostic]:
		return [self.to_diagnostic()]


class LexicalError(CompilationError):
	stage = "lexical"
	default_code = "E101"


class SyntaxError(CompilationError):  # noqa: A001 - the language's own syntax error
	stage = "syntax"
	default_code = "E201"


class SemanticError(CompilationError):
	stage = "semantic"
	default_code = "E300"


class SemanticErrorGroup(SemanticError):
	"""Raised once at the end of a non fail-fast analysis that recorded errors."""

	def __init__(self, errors: Sequence[SemanticError]) -> None:
		first = errors[0]
		super().__init__(
			f"{len(errors)} semantic error(s); first: {first.message}",
			first.line,
			first.column,
			code=first.code,
			hint=first.hint,
		)
		self.errors = list(errors)

	def to_diagnostics(self) -> List[Diagnostic]:
		return [error.to_diagnostic() for error in self.errors]


# ---------------------------------------------------------------------------
# Configuration


@dataclass
class CompilerOptions:
	fail_fast: bool = True
	max_source_length: int = 1_000_000
	# parentheses, call arguments and begin/end bodies
	max_nesting_depth: int = 64
	# levels of the expression tree; each operator in a chain adds one
	max_expression_depth: int = 256


# ---------------------------------------------------------------------------
# Lexer


class TokenKind(Enum):
	MODELO = auto()
	BEGIN = auto()
	END = auto()
	VAR = auto()
	INTEGER = auto()
	BOOLEAN = auto()
	IF = auto()
	THEN = auto()
	ELSE = auto()
	WHILE = auto()
	DO = auto()
	PROCEDURE = auto()
	FUNCTION = auto()
	READ = auto()
	BREAK = auto()
	CONTINUE = auto()
	TRUE = auto()
	FALSE = auto()
	IDENTIFIER = auto()
	NUMBER = auto()
	PLUS = auto()
	MINUS = auto()
	TIMES = auto()
	DIVIDE = auto()
	EQUAL = auto()
	NOT_EQUAL = auto()
	LESS = auto()
	LESS_EQUAL = auto()
	GREATER = auto()
	GREATER_EQUAL = auto()
	ASSIGN = auto()
	COLON = auto()
	SEMICOLON = auto()
	COMMA = auto()
	LPAREN = auto()
	RPAREN = auto()
	EOF = auto()


RESERVED_WORDS: Dict[str, TokenKind] = {
	"MODELO": TokenKind.MODELO,
	"BEGIN": TokenKind.BEGIN,
	"END": TokenKind.END,
	"VAR": TokenKind.VAR,
	"INTEGER": TokenKind.INTEGER,
	"BOOLEAN": TokenKind.BOOLEAN,
	"IF": TokenKind.IF,
	"THEN": TokenKind.THEN,
	"ELSE": TokenKind.ELSE,
	"WHILE": TokenKind.WHILE,
	"DO": TokenKind.DO,
	"PROCEDURE": TokenKind.PROCEDURE,
	"FUNCTION": TokenKind.FUNCTION,
	"READ": TokenKind.READ,
	"BREAK": TokenKind.BREAK,
	"CONTINUE": TokenKind.CONTINUE,
	"TRUE": TokenKind.TRUE,
	"FALSE": TokenKind.FALSE,
}


SYMBOLS: Dict[str, TokenKind] = {
	"+": TokenKind.PLUS,
	"-": TokenKind.MINUS,
	"*": TokenKind.TIMES,
	"/": TokenKind.DIVIDE,
	"=": TokenKind.EQUAL,
	"!=": TokenKind.NOT_EQUAL,
	"<": TokenKind.LESS,
	"<=": TokenKind.LESS_EQUAL,
	">": TokenKind.GREATER,
	">=": TokenKind.GREATER_EQUAL,
	":=": TokenKind.ASSIGN,
	":": TokenKind.COLON,
	";": TokenKind.SEMICOLON,
	",": TokenKind.COMMA,
	"(": TokenKind.LPAREN,
	")": TokenKind.RPAREN,
}


IDENTIFIER_START = string.ascii_letters + "_"
IDENTIFIER_CHARS = IDENTIFIER_START + string.digits + "#"
IDENTIFIER_TERMINATOR = "#"


@dataclass(frozen=True)
class Token:
	kind: TokenKind
	lexeme: str
	line: int
	column: int


class Lexer:
	def __init__(self, source: str, symbols: Optional["SymbolTable"] = None, max_length: Optional[int] = None) -> None:
		self.source = source
		self.symbols = symbols
		self.max_length = max_length
		self.length = len(source)
		self.index = 0
		self.line = 1
		self.column = 1

	def tokenize(self) -> List[Token]:
		if self.max_length is not None and self.length > self.max_length:
			raise LexicalError(
				f"Source is {self.length} characters long; the limit is {self.max_length}.",
				code="E103",
			)
		tokens: List[Token] = []
		while not self._is_eof():
			ch = self._peek()
			if ch == "\n":
				self._advance()
				self.line += 1
				self.column = 1
			elif ch.isspace():
				self._advance()
			elif ch in IDENTIFIER_START:
				tokens.append(self._consume_identifier())
			elif ch in string.digits:
				tokens.append(self._consume_number())
			else:
				tokens.append(self._consume_symbol())
		tokens.append(Token(TokenKind.EOF, "", self.line, self.column))
		logger.debug("Tokenized %d token(s) over %d line(s)", len(tokens) - 1, self.line)
		return tokens

	def _consume_identifier(self) -> Token:
		line, column = self.line, self.column
		start_index = self.index
		while not self._is_eof() and self._peek() in IDENTIFIER_CHARS:
			if self._advance() == IDENTIFIER_TERMINATOR:
				break
		lexeme = self.source[start_index:self.index]
		kind = RESERVED_WORDS.get(lexeme.upper().replace(IDENTIFIER_TERMINATOR, ""))
		if kind is not None:
			return Token(kind, lexeme, line, column)
		if self.symbols is not None and self.symbols.get(lexeme, GLOBAL_SCOPE) is None:
			self.symbols.add_entry(lexeme, line=line, column=column, scope=GLOBAL_SCOPE)
		return Token(TokenKind.IDENTIFIER, lexeme, line, column)

	def _consume_number(self) -> Token:
		line, column = self.line, self.column
		lexeme = self._consume_while(lambda c: c in string.digits)
		return Token(TokenKind.NUMBER, lexeme, line, column)

	def _consume_symbol(self) -> Token:
		line, column = self.line, self.column
		ch = self._advance()
		if ch in "<>!:" and not self._is_eof() and self._peek() == "=":
			self._advance()
			return Token(SYMBOLS[ch + "="], ch + "=", line, column)
		if ch == "!":
			raise LexicalError("Incomplete operator '!'.", line, column, code="E102", hint="Use '!=' for inequality.")
		kind = SYMBOLS.get(ch)
		if kind is None:
			raise LexicalError(f"Invalid character {ch!r}.", line, column, code="E101")
		return Token(kind, ch, line, column)

	def _consume_while(self, predicate: Callable[[str], bool]) -> str:
		start_index = self.index
		while not self._is_eof() and predicate(self._peek()):
			self._advance()
		return self.source[start_index:self.index]

	def _advance(self) -> str:
		ch = self.source[self.index]
		self.index += 1
		self.column += 1
		return ch

	def _peek(self) -> str:
		return self.source[self.index]

	def _is_eof(self) -> bool:
		return self.index >= self.length


def tokenize(source: str, symbols: Optional["SymbolTable"] = None) -> List[Token]:
	"""Scan ``source`` into tokens ending with a single EOF token.

	Scanning has no side effects unless ``symbols`` is given, in which case every
	non-reserved identifier is pre-registered in its global frame with empty metadata.
	"""
	return Lexer(source, symbols).tokenize()


# ---------------------------------------------------------------------------
# Symbol table


class TypeTag(Enum):
	INTEGER = "integer"
	BOOLEAN = "boolean"
	UNKNOWN = "<unknown>"

	def __str__(self) -> str:
		return self.value


class Category(Enum):
	VARIABLE = "variable"
	PROCEDURE = "procedure"
	FUNCTION = "function"

	def __str__(self) -> str:
		return self.value


@dataclass(frozen=True)
class ParameterSpec:
	name: str
	type: TypeTag


@dataclass
class SymbolTableEntry:
	name: str
	type: Optional[TypeTag] = None
	category: Optional[Category] = None
	parameters: Optional[Tuple[ParameterSpec, ...]] = None
	initial_value: Optional["Expression"] = None
	line: int = 0
	column: int = 0

	@property
	def is_declared(self) -> bool:
		return self.category is not None


@dataclass
class ScopeFrame:
	index: int
	name: str
	parent: Optional[int]
	depth: int
	entries: Dict[str, SymbolTableEntry] = field(default_factory=dict)


GLOBAL_SCOPE = 0


class SymbolTable:
	"""Arena of scope frames; frame 0 is the global scope.

	Lookups start at a frame and walk the parent chain outward, so inner
	declarations shadow outer ones.
	"""

	def __init__(self) -> None:
		self.frames: List[ScopeFrame] = [ScopeFrame(GLOBAL_SCOPE, "global", None, 0)]
		self.current = GLOBAL_SCOPE

	def push_scope(self, name: str) -> int:
		parent = self.frames[self.current]
		frame = ScopeFrame(len(self.frames), name, parent.index, parent.depth + 1)
		self.frames.append(frame)
		self.current = frame.index
		logger.debug("Entering scope '%s' (frame %d, depth %d)", name, frame.index, frame.depth)
		return frame.index

	def pop_scope(self) -> None:
		frame = self.frames[self.current]
		if frame.parent is None:
			raise RuntimeError("Cannot leave the global scope.")
		logger.debug("Leaving scope '%s' (frame %d)", frame.name, frame.index)
		self.current = frame.parent

	def scope_of(self, index: int) -> ScopeFrame:
		return self.frames[index]

	def add_entry(
		self,
		name: str,
		type: Optional[TypeTag] = None,
		category: Optional[Category] = None,
		parameters: Optional[Sequence[ParameterSpec]] = None,
		initial_value: Optional["Expression"] = None,
		line: int = 0,
		column: int = 0,
		scope: Optional[int] = None,
	) -> SymbolTableEntry:
		frame = self.frames[self.current if scope is None else scope]
		entry = SymbolTableEntry(
			name=name,
			type=type,
			category=category,
			parameters=tuple(parameters) if parameters is not None else None,
			initial_value=initial_value,
			line=line,
			column=column,
		)
		frame.entries[name] = entry
		return entry

	def declare(
		self,
		name: str,
		category: Category,
		type: Optional[TypeTag] = None,
		parameters: Optional[Sequence[ParameterSpec]] = None,
		initial_value: Optional["Expression"] = None,
		line: int = 0,
		column: int = 0,
	) -> SymbolTableEntry:
		frame = self.frames[self.current]
		existing = frame.entries.get(name)
		if existing is not None and existing.is_declared:
			raise SemanticError(
				f"'{name}' is already declared in this scope as a {existing.category} (line {existing.line}).",
				line,
				column,
				code="E306",
			)
		logger.debug("Declaring %s '%s' in scope '%s'", category, name, frame.name)
		return self.add_entry(name, type, category, parameters, initial_value, line, column, frame.index)

	def get(self, name: str, scope: Optional[int] = None) -> Optional[SymbolTableEntry]:
		index: Optional[int] = self.current if scope is None else scope
		while index is not None:
			frame = self.frames[index]
			entry = frame.entries.get(name)
			if entry is not None:
				return entry
			index = frame.parent
		return None

	def contains(self, name: str, scope: Optional[int] = None) -> bool:
		entry = self.get(name, scope)
		return entry is not None and entry.is_declared

	def snapshot(self) -> List[Dict[str, Any]]:
		frames = []
		for frame in self.frames:
			frames.append(
				{
					"scope": frame.name,
					"index": frame.index,
					"parent": frame.parent,
					"depth": frame.depth,
					"symbols": [
						{
							"name": entry.name,
							"type": entry.type.value if entry.type else None,
							"category": entry.category.value if entry.category else None,
							"parameters": [
								{"name": p.name, "type": p.type.value} for p in entry.parameters
							]
							if entry.parameters is not None
							else None,
							"line": entry.line,
							"column": entry.column,
						}
						for entry in frame.entries.values()
					],
				}
			)
		return frames


# ---------------------------------------------------------------------------
# AST definitions


@dataclass
class ASTNode:
	line: int = field(compare=False)
	column: int = field(compare=False)


class Statement(ASTNode):
	pass


class Expression(ASTNode):
	pass


@dataclass
class Literal(Expression):
	value: Union[int, bool]


@dataclass
class VariableRef(Expression):
	identifier: str


@dataclass
class FunctionCall(Expression):
	name: str
	arguments: List[Expression]


@dataclass
class BinaryOp(Expression):
	left: Expression
	right: Expression
	operator: str


@dataclass
class Assignment(Statement):
	target: str
	value: List[Expression]


@dataclass
class Conditional(Statement):
	conditions: List[Expression]
	then_branch: List[Statement]
	else_branch: Optional[List[Statement]] = None


@dataclass
class WhileLoop(Statement):
	condition: Expression
	body: List[Statement]


@dataclass
class ProcedureCall(Statement):
	name: str
	arguments: List[Expression]


@dataclass
class Read(Statement):
	expression: Expression


@dataclass
class Break(Statement):
	pass


@dataclass
class Continue(Statement):
	pass


@dataclass
class VarDecl(ASTNode):
	identifier: str
	type: TypeTag
	initial_value: Optional[Expression] = None


@dataclass
class Block(ASTNode):
	variable_declarations: List[VarDecl]
	subroutine_declarations: List["SubroutineDecl"]
	statements: List[Statement]
	scope: int = GLOBAL_SCOPE


@dataclass
class SubroutineDecl(ASTNode):
	name: str
	category: Category
	parameters: List[ParameterSpec]
	body: Block
	return_type: Optional[TypeTag] = None


@dataclass
class Program(ASTNode):
	block: Block


# ---------------------------------------------------------------------------
# Parser


TYPE_KEYWORDS: Dict[TokenKind, TypeTag] = {
	TokenKind.INTEGER: TypeTag.INTEGER,
	TokenKind.BOOLEAN: TypeTag.BOOLEAN,
}

RELATIONAL_TOKENS = {
	TokenKind.EQUAL,
	TokenKind.NOT_EQUAL,
	TokenKind.LESS,
	TokenKind.LESS_EQUAL,
	TokenKind.GREATER,
	TokenKind.GREATER_EQUAL,
}
ADDITIVE_TOKENS = {TokenKind.PLUS, TokenKind.MINUS}
MULTIPLICATIVE_TOKENS = {TokenKind.TIMES, TokenKind.DIVIDE}

_KIND_DESCRIPTIONS: Dict[TokenKind, str] = {kind: f"'{word.lower()}'" for word, kind in RESERVED_WORDS.items()}
_KIND_DESCRIPTIONS.update({kind: f"'{symbol}'" for symbol, kind in SYMBOLS.items()})
_KIND_DESCRIPTIONS.update(
	{
		TokenKind.MODELO: "'MODELO'",
		TokenKind.IDENTIFIER: "an identifier",
		TokenKind.NUMBER: "a number",
		TokenKind.EOF: "end of input",
	}
)


def describe_token(token: Token) -> str:
	if token.kind == TokenKind.EOF:
		return "end of input"
	return f"'{token.lexeme}'"


class Parser:
	def __init__(self, tokens: List[Token], symbols: Optional[SymbolTable] = None, options: Optional[CompilerOptions] = None) -> None:
		if not tokens or tokens[-1].kind != TokenKind.EOF:
			last = tokens[-1] if tokens else None
			end = Token(TokenKind.EOF, "", last.line if last else 1, last.column + len(last.lexeme) if last else 1)
			tokens = list(tokens) + [end]
		self.tokens = tokens
		self.symbols = symbols if symbols is not None else SymbolTable()
		self.options = options or CompilerOptions()
		self.index = 0
		self.nesting = 0
		self._expression_depths: Dict[int, int] = {}

	def parse_program(self) -> Program:
		start = self._expect(TokenKind.MODELO)
		block = self._parse_block()
		self._match(TokenKind.SEMICOLON)
		self._expect(TokenKind.EOF)
		logger.debug("Parsed program with %d frame(s)", len(self.symbols.frames))
		return Program(line=start.line, column=start.column, block=block)

	def _parse_block(self) -> Block:
		begin = self._expect(TokenKind.BEGIN)
		with self._nested(begin):
			variables: List[VarDecl] = []
			while self._check(TokenKind.VAR):
				variables.append(self._parse_var_decl())
			subroutines: List[SubroutineDecl] = []
			while self._check(TokenKind.PROCEDURE) or self._check(TokenKind.FUNCTION):
				subroutines.append(self._parse_subroutine())
			statements = self._parse_statements()
		self._expect(TokenKind.END)
		return Block(
			line=begin.line,
			column=begin.column,
			variable_declarations=variables,
			subroutine_declarations=subroutines,
			statements=statements,
			scope=self.symbols.current,
		)

	def _parse_var_decl(self) -> VarDecl:
		keyword = self._advance_token()
		type_tag = self._parse_type()
		name = self._expect(TokenKind.IDENTIFIER, "a variable name")
		initial_value = None
		if self._match(TokenKind.ASSIGN):
			initial_value = self._parse_expression()
		self._expect(TokenKind.SEMICOLON)
		self.symbols.declare(
			name.lexeme,
			Category.VARIABLE,
			type=type_tag,
			initial_value=initial_value,
			line=name.line,
			column=name.column,
		)
		return VarDecl(
			line=keyword.line,
			column=keyword.column,
			identifier=name.lexeme,
			type=type_tag,
			initial_value=initial_value,
		)

	def _parse_subroutine(self) -> SubroutineDecl:
		keyword = self._advance_token()
		category = Category.PROCEDURE if keyword.kind == TokenKind.PROCEDURE else Category.FUNCTION
		name = self._expect(TokenKind.IDENTIFIER, f"a {category} name")
		self._expect(TokenKind.LPAREN)
		parameters: List[Tuple[ParameterSpec, Token]] = []
		if not self._check(TokenKind.RPAREN):
			parameters.append(self._parse_parameter())
			while self._match(TokenKind.COMMA):
				parameters.append(self._parse_parameter())
		self._expect(TokenKind.RPAREN)
		return_type = None
		if category is Category.FUNCTION:
			self._expect(TokenKind.COLON, "':' before the function's return type")
			return_type = self._parse_type()
		self._expect(TokenKind.SEMICOLON)
		specs = [spec for spec, _ in parameters]
		# Declared before the body so the subroutine can call itself.
		self.symbols.declare(
			name.lexeme,
			category,
			type=return_type,
			parameters=specs,
			line=name.line,
			column=name.column,
		)
		self.symbols.push_scope(name.lexeme)
		for spec, token in parameters:
			self.symbols.declare(spec.name, Category.VARIABLE, type=spec.type, line=token.line, column=token.column)
		body = self._parse_block()
		self.symbols.pop_scope()
		self._expect(TokenKind.SEMICOLON)
		return SubroutineDecl(
			line=keyword.line,
			column=keyword.column,
			name=name.lexeme,
			category=category,
			parameters=specs,
			body=body,
			return_type=return_type,
		)

	def _parse_parameter(self) -> Tuple[ParameterSpec, Token]:
		name = self._expect(TokenKind.IDENTIFIER, "a parameter name")
		self._expect(TokenKind.COLON)
		return ParameterSpec(name.lexeme, self._parse_type()), name

	def _parse_type(self) -> TypeTag:
		token = self._advance_token()
		type_tag = TYPE_KEYWORDS.get(token.kind)
		if type_tag is None:
			raise self._error("a type ('integer' or 'boolean')", token)
		return type_tag

	def _parse_statements(self) -> List[Statement]:
		statements: List[Statement] = []
		while not self._check(TokenKind.END) and not self._is_at_end():
			statements.append(self._parse_statement())
		return statements

	def _parse_body(self) -> List[Statement]:
		begin = self._expect(TokenKind.BEGIN)
		with self._nested(begin):
			statements = self._parse_statements()
		self._expect(TokenKind.END)
		self._match(TokenKind.SEMICOLON)
		return statements

	def _parse_statement(self) -> Statement:
		token = self._peek()
		if token.kind == TokenKind.IF:
			return self._parse_conditional()
		if token.kind == TokenKind.WHILE:
			return self._parse_while()
		if token.kind == TokenKind.READ:
			self._advance_token()
			self._expect(TokenKind.LPAREN)
			expression = self._parse_expression()
			self._expect(TokenKind.RPAREN)
			self._expect(TokenKind.SEMICOLON)
			return Read(line=token.line, column=token.column, expression=expression)
		if token.kind == TokenKind.BREAK:
			self._advance_token()
			self._expect(TokenKind.SEMICOLON)
			return Break(line=token.line, column=token.column)
		if token.kind == TokenKind.CONTINUE:
			self._advance_token()
			self._expect(TokenKind.SEMICOLON)
			return Continue(line=token.line, column=token.column)
		if token.kind == TokenKind.IDENTIFIER:
			following = self._peek_next()
			if following.kind == TokenKind.ASSIGN:
				return self._parse_assignment()
			if following.kind == TokenKind.LPAREN:
				self._advance_token()
				arguments = self._parse_arguments()
				self._expect(TokenKind.SEMICOLON)
				return ProcedureCall(line=token.line, column=token.column, name=token.lexeme, arguments=arguments)
			raise self._error(f"':=' or '(' after '{token.lexeme}'", following)
		raise self._error("a statement", token)

	def _parse_assignment(self) -> Assignment:
		target = self._advance_token()
		self._expect(TokenKind.ASSIGN)
		values = [self._parse_expression()]
		while self._match(TokenKind.COMMA):
			values.append(self._parse_expression())
		self._expect(TokenKind.SEMICOLON)
		return Assignment(line=target.line, column=target.column, target=target.lexeme, value=values)

	def _parse_conditional(self) -> Conditional:
		keyword = self._advance_token()
		self._expect(TokenKind.LPAREN)
		conditions = [self._parse_expression()]
		while self._match(TokenKind.COMMA):
			conditions.append(self._parse_expression())
		self._expect(TokenKind.RPAREN)
		self._expect(TokenKind.THEN)
		then_branch = self._parse_body()
		else_branch = self._parse_body() if self._match(TokenKind.ELSE) else None
		return Conditional(
			line=keyword.line,
			column=keyword.column,
			conditions=conditions,
			then_branch=then_branch,
			else_branch=else_branch,
		)

	def _parse_while(self) -> WhileLoop:
		keyword = self._advance_token()
		self._expect(TokenKind.LPAREN)
		condition = self._parse_expression()
		self._expect(TokenKind.RPAREN)
		self._expect(TokenKind.DO)
		body = self._parse_body()
		return WhileLoop(line=keyword.line, column=keyword.column, condition=condition, body=body)

	def _parse_arguments(self) -> List[Expression]:
		opening = self._expect(TokenKind.LPAREN)
		arguments: List[Expression] = []
		with self._nested(opening):
			if not self._check(TokenKind.RPAREN):
				arguments.append(self._parse_expression())
				while self._match(TokenKind.COMMA):
					arguments.append(self._parse_expression())
		self._expect(TokenKind.RPAREN)
		return arguments

	def _parse_expression(self) -> Expression:
		return self._parse_relational()

	def _parse_relational(self) -> Expression:
		expr = self._parse_additive()
		while self._peek().kind in RELATIONAL_TOKENS:
			operator = self._advance_token()
			expr = self._binary(expr, operator, self._parse_additive())
		return expr

	def _parse_additive(self) -> Expression:
		expr = self._parse_term()
		while self._peek().kind in ADDITIVE_TOKENS:
			operator = self._advance_token()
			expr = self._binary(expr, operator, self._parse_term())
		return expr

	def _parse_term(self) -> Expression:
		expr = self._parse_factor()
		while self._peek().kind in MULTIPLICATIVE_TOKENS:
			operator = self._advance_token()
			expr = self._binary(expr, operator, self._parse_factor())
		return expr

	def _parse_factor(self) -> Expression:
		token = self._advance_token()
		if token.kind == TokenKind.NUMBER:
			return Literal(line=token.line, column=token.column, value=int(token.lexeme))
		if token.kind == TokenKind.TRUE or token.kind == TokenKind.FALSE:
			return Literal(line=token.line, column=token.column, value=token.kind == TokenKind.TRUE)
		if token.kind == TokenKind.IDENTIFIER:
			if self._check(TokenKind.LPAREN):
				arguments = self._parse_arguments()
				call = FunctionCall(line=token.line, column=token.column, name=token.lexeme, arguments=arguments)
				return self._track_depth(call, arguments)
			return VariableRef(line=token.line, column=token.column, identifier=token.lexeme)
		if token.kind == TokenKind.LPAREN:
			with self._nested(token):
				expr = self._parse_expression()
			self._expect(TokenKind.RPAREN, "')' to close the expression")
			return expr
		raise self._error("an expression", token)

	def _binary(self, left: Expression, operator: Token, right: Expression) -> Expression:
		node = BinaryOp(line=left.line, column=left.column, left=left, right=right, operator=operator.lexeme)
		return self._track_depth(node, [left, right])

	def _track_depth(self, node: Expression, children: List[Expression]) -> Expression:
		depth = 1 + max((self._expression_depths.get(id(child), 1) for child in children), default=0)
		if depth > self.options.max_expression_depth:
			raise SyntaxError(
				f"Expression is nested more than {self.options.max_expression_depth} levels deep.",
				node.line,
				node.column,
				code="E203",
				hint="Split the expression over several assignments.",
			)
		self._expression_depths[id(node)] = depth
		return node

	@contextmanager
	def _nested(self, opening: Token) -> Iterator[None]:
		if self.nesting >= self.options.max_nesting_depth:
			raise SyntaxError(
				f"Constructs are nested more than {self.options.max_nesting_depth} levels deep.",
				opening.line,
				opening.column,
				code="E203",
			)
		self.nesting += 1
		try:
			yield
		finally:
			self.nesting -= 1

	# Utility parsing helpers -------------------------------------------------

	def _match(self, kind: TokenKind) -> bool:
		if self._check(kind):
			self.index += 1
			return True
		return False

	def _check(self, kind: TokenKind) -> bool:
		return self._peek().kind == kind

	def _peek(self) -> Token:
		return self.tokens[self.index]

	def _peek_next(self) -> Token:
		if self.index + 1 >= len(self.tokens):
			return self.tokens[-1]
		return self.tokens[self.index + 1]

	def _advance_token(self) -> Token:
		token = self.tokens[self.index]
		if not self._is_at_end():
			self.index += 1
		return token

	def _expect(self, kind: TokenKind, expected: Optional[str] = None) -> Token:
		if self._check(kind):
			return self._advance_token()
		raise self._error(expected or _KIND_DESCRIPTIONS[kind], self._peek(), hint=self._hint_for_expect(kind))

	def _is_at_end(self) -> bool:
		return self._peek().kind == TokenKind.EOF

	def _error(self, expected: str, token: Token, hint: Optional[str] = None) -> SyntaxError:
		code = "E202" if token.kind == TokenKind.EOF else "E201"
		return SyntaxError(f"Expected {expected}, found {describe_token(token)}.", token.line, token.column, code=code, hint=hint)

	def _hint_for_expect(self, expected: TokenKind) -> Optional[str]:
		if expected == TokenKind.SEMICOLON:
			return "Declarations and statements end with ';'."
		if expected == TokenKind.END:
			return "Every 'begin' needs a matching 'end'."
		if expected == TokenKind.BEGIN:
			return "Blocks and the bodies of 'if'/'while' are written 'begin ... end'."
		if expected == TokenKind.MODELO:
			return "A program starts with 'MODELO begin'."
		if expected == TokenKind.LPAREN:
			return "Conditions, calls and 'read' need parentheses, e.g. while (i < n) do begin ... end"
		if expected == TokenKind.IDENTIFIER and self._peek().kind in RESERVED_WORDS.values():
			return "Reserved words cannot be used as names."
		return None


def parse(tokens: List[Token], symbols: Optional[SymbolTable] = None, options: Optional[CompilerOptions] = None) -> Program:
	return Parser(tokens, symbols, options).parse_program()


# ---------------------------------------------------------------------------
# Semantic analyzer


RELATIONAL_OPERATORS = {"=", "!=", "<", "<=", ">", ">="}


@dataclass(frozen=True)
class AnalysisContext:
	scope: int = GLOBAL_SCOPE
	depth: int = 0
	in_loop: bool = False
	function: Optional[str] = None
	# variables of the current block whose declarations have not been reached yet
	pending: FrozenSet[str] = frozenset()

	@property
	def is_local(self) -> bool:
		return self.depth > 0


class SemanticAnalyzer:
	def __init__(self, symbols: SymbolTable, options: Optional[CompilerOptions] = None) -> None:
		self.symbols = symbols
		self.options = options or CompilerOptions()
		self._errors: List[SemanticError] = []

	def analyze(self, program: Program) -> None:
		logger.debug("Semantic analysis started (fail_fast=%s)", self.options.fail_fast)
		self._errors = []
		self._analyze_block(program.block, AnalysisContext(scope=program.block.scope))
		if self._errors:
			raise SemanticErrorGroup(self._errors)
		logger.debug("Semantic analysis finished without errors")

	def _run(self, check: Callable[[Any, AnalysisContext], None], node: ASTNode, ctx: AnalysisContext) -> None:
		try:
			check(node, ctx)
		except SemanticError as error:
			if self.options.fail_fast:
				raise
			self._errors.append(error)

	def _analyze_block(self, block: Block, ctx: AnalysisContext) -> None:
		logger.debug("Analyzing %s block in frame %d", "local" if ctx.is_local else "global", ctx.scope)
		names = [declaration.identifier for declaration in block.variable_declarations]
		for position, declaration in enumerate(block.variable_declarations):
			self._run(self._analyze_var_decl, declaration, replace(ctx, pending=frozenset(names[position:])))
		for subroutine in block.subroutine_declarations:
			self._analyze_subroutine(subroutine, ctx)
		self._analyze_statements(block.statements, ctx)

	def _analyze_statements(self, statements: List[Statement], ctx: AnalysisContext) -> None:
		for statement in statements:
			self._run(self._analyze_statement, statement, ctx)

	def _analyze_var_decl(self, declaration: VarDecl, ctx: AnalysisContext) -> None:
		if declaration.initial_value is None:
			return
		found = self.infer_type(declaration.initial_value, ctx)
		self._check_compatibility(declaration.identifier, declaration.type, found, declaration)

	def _analyze_subroutine(self, declaration: SubroutineDecl, ctx: AnalysisContext) -> None:
		frame = self.symbols.scope_of(declaration.body.scope)
		inner = replace(
			ctx,
			scope=frame.index,
			depth=frame.depth,
			in_loop=False,
			function=declaration.name if declaration.category is Category.FUNCTION else None,
		)
		self._analyze_block(declaration.body, inner)

	def _analyze_statement(self, statement: Statement, ctx: AnalysisContext) -> None:
		if isinstance(statement, Assignment):
			self._analyze_assignment(statement, ctx)
		elif isinstance(statement, Conditional):
			for condition in statement.conditions:
				self._require_boolean(condition, "if", ctx)
			self._analyze_statements(statement.then_branch, ctx)
			if statement.else_branch:
				self._analyze_statements(statement.else_branch, ctx)
		elif isinstance(statement, WhileLoop):
			self._require_boolean(statement.condition, "while", ctx)
			self._analyze_statements(statement.body, replace(ctx, in_loop=True))
		elif isinstance(statement, ProcedureCall):
			entry = self._resolve(statement.name, statement, ctx)
			if entry.category is not Category.PROCEDURE:
				raise SemanticError(f"'{statement.name}' is a {entry.category}, not a procedure.", statement.line, statement.column, code="E304")
			self._check_arguments(entry, statement.arguments, statement, ctx)
		elif isinstance(statement, Read):
			self._analyze_read(statement, ctx)
		elif isinstance(statement, (Break, Continue)):
			if not ctx.in_loop:
				keyword = "break" if isinstance(statement, Break) else "continue"
				raise SemanticError(f"'{keyword}' used outside of a loop.", statement.line, statement.column, code="E307")
		else:
			raise TypeError(f"Unhandled statement node {type(statement).__name__}")

	def _analyze_assignment(self, statement: Assignment, ctx: AnalysisContext) -> None:
		entry = self._resolve(statement.target, statement, ctx)
		if entry.category is not Category.VARIABLE and statement.target != ctx.function:
			raise SemanticError(
				f"'{statement.target}' is a {entry.category} and cannot be assigned.",
				statement.line,
				statement.column,
				code="E304",
				hint="Only variables, or a function's own name inside its body, can be assigned.",
			)
		for value in statement.value:
			found = self.infer_type(value, ctx)
			self._check_compatibility(statement.target, entry.type, found, value)

	def _analyze_read(self, statement: Read, ctx: AnalysisContext) -> None:
		expression = statement.expression
		if isinstance(expression, (VariableRef, FunctionCall, BinaryOp)):
			self.infer_type(expression, ctx)
		elif isinstance(expression, Literal):
			raise SemanticError("'read' needs a variable, found a literal.", expression.line, expression.column, code="E308")
		else:
			raise TypeError(f"Unhandled expression node {type(expression).__name__}")

	def _require_boolean(self, condition: Expression, construct: str, ctx: AnalysisContext) -> None:
		found = self.infer_type(condition, ctx)
		if found is not TypeTag.BOOLEAN:
			raise SemanticError(
				f"Condition of '{construct}' must be a boolean expression. Found: {found}.",
				condition.line,
				condition.column,
				code="E303",
			)

	def _check_arguments(self, entry: SymbolTableEntry, arguments: List[Expression], node: ASTNode, ctx: AnalysisContext) -> None:
		parameters = entry.parameters or ()
		if len(parameters) != len(arguments):
			raise SemanticError(
				f"{str(entry.category).capitalize()} '{entry.name}' expects {len(parameters)} argument(s), received {len(arguments)}.",
				node.line,
				node.column,
				code="E305",
			)
		for position, (parameter, argument) in enumerate(zip(parameters, arguments), start=1):
			found = self.infer_type(argument, ctx)
			if found is not parameter.type:
				raise SemanticError(
					f"Argument {position} ('{parameter.name}') of '{entry.name}' expects {parameter.type}, found {found}.",
					argument.line,
					argument.column,
					code="E301",
				)

	def _check_compatibility(self, identifier: str, expected: Optional[TypeTag], found: TypeTag, node: ASTNode) -> None:
		if expected is not found:
			raise SemanticError(
				f"Type of '{identifier}' is not compatible with the assigned value. Expected: {expected}, found: {found}.",
				node.line,
				node.column,
				code="E301",
			)

	def _resolve(self, name: str, node: ASTNode, ctx: AnalysisContext) -> SymbolTableEntry:
		entry = self.symbols.get(name, ctx.scope)
		if entry is None or not entry.is_declared:
			raise SemanticError(f"Identifier '{name}' is not declared.", node.line, node.column, code="E302")
		return entry

	def infer_type(self, expression: Expression, ctx: AnalysisContext) -> TypeTag:
		result = self._infer(expression, ctx)
		if result is TypeTag.UNKNOWN:
			raise SemanticError(
				f"Cannot determine the type of {type(expression).__name__} expression.",
				expression.line,
				expression.column,
				code="E310",
			)
		return result

	def _infer_chain(self, expression: BinaryOp, ctx: AnalysisContext) -> TypeTag:
		# Operator chains are left-deep, so the left spine is walked in a loop.
		chain: List[BinaryOp] = []
		node: Expression = expression
		while isinstance(node, BinaryOp):
			chain.append(node)
			node = node.left
		result = self.infer_type(node, ctx)
		for operation in reversed(chain):
			right = self.infer_type(operation.right, ctx)
			if operation.operator in RELATIONAL_OPERATORS:
				result = TypeTag.BOOLEAN
			elif result is not right:
				raise SemanticError(
					f"Incompatible types in expression: {result} and {right}.",
					operation.line,
					operation.column,
					code="E309",
				)
		return result

	def _infer(self, expression: Expression, ctx: AnalysisContext) -> TypeTag:
		if isinstance(expression, Literal):
			return TypeTag.BOOLEAN if isinstance(expression.value, bool) else TypeTag.INTEGER
		if isinstance(expression, VariableRef):
			if expression.identifier in ctx.pending:
				raise SemanticError(
					f"Variable '{expression.identifier}' is used before its declaration.",
					expression.line,
					expression.column,
					code="E302",
					hint="An initializer can only use variables declared before it.",
				)
			entry = self._resolve(expression.identifier, expression, ctx)
			if entry.category is not Category.VARIABLE:
				raise SemanticError(
					f"'{expression.identifier}' is a {entry.category}; call it with '(...)'.",
					expression.line,
					expression.column,
					code="E304",
				)
			return entry.type or TypeTag.UNKNOWN
		if isinstance(expression, FunctionCall):
			entry = self._resolve(expression.name, expression, ctx)
			if entry.category is not Category.FUNCTION:
				raise SemanticError(
					f"'{expression.name}' is a {entry.category}, not a function.",
					expression.line,
					expression.column,
					code="E304",
				)
			self._check_arguments(entry, expression.arguments, expression, ctx)
			return entry.type or TypeTag.UNKNOWN
		if isinstance(expression, BinaryOp):
			return self._infer_chain(expression, ctx)
		return TypeTag.UNKNOWN


def analyze(program: Program, symbols: SymbolTable, options: Optional[CompilerOptions] = None) -> None:
	SemanticAnalyzer(symbols, options).analyze(program)


# ---------------------------------------------------------------------------
# Compilation pipeline


@dataclass
class CompilationArtifacts:
	tokens: List[Token]
	ast: Program
	symbols: SymbolTable
	duration_ms: float


class ModeloCompiler:
	def __init__(self, options: Optional[CompilerOptions] = None) -> None:
		self.options = options or CompilerOptions()

	def tokenize(self, source: str) -> List[Token]:
		return Lexer(source, max_length=self.options.max_source_length).tokenize()

	def compile(self, source: str) -> CompilationArtifacts:
		start = time.perf_counter()
		symbols = SymbolTable()
		tokens = self.tokenize(source)
		program = Parser(tokens, symbols, self.options).parse_program()
		SemanticAnalyzer(symbols, self.options).analyze(program)
		duration_ms = (time.perf_counter() - start) * 1000
		logger.debug("Compiled %d token(s) in %.2f ms", len(tokens), duration_ms)
		return CompilationArtifacts(tokens=tokens, ast=program, symbols=symbols, duration_ms=duration_ms)


def compile_source(source: str, options: Optional[CompilerOptions] = None) -> CompilationArtifacts:
	return ModeloCompiler(options).compile(source)
