import pytest
from hypothesis import given
from hypothesis import strategies as st

import modelo_compiler as mc
from modelo_compiler import Lexer, LexicalError, SymbolTable, TokenKind, tokenize


reserved_words = set(mc.RESERVED_WORDS)


def pairs(source: str) -> list[tuple[TokenKind, str]]:
	return [(t.kind, t.lexeme) for t in tokenize(source)]


def test_identifier_scans_to_a_single_token():
	assert pairs("x_1") == [(TokenKind.IDENTIFIER, "x_1"), (TokenKind.EOF, "")]


def test_scanning_with_a_table_registers_identifiers_without_metadata():
	table = SymbolTable()
	tokenize("x_1", table)
	entry = table.get("x_1")
	assert entry is not None
	assert entry.type is None
	assert entry.category is None
	assert entry.parameters is None
	assert (entry.line, entry.column) == (1, 1)
	# a placeholder does not count as a declaration
	assert not table.contains("x_1")


def test_reserved_word_is_never_registered():
	table = SymbolTable()
	tokens = tokenize("integer", table)
	assert [t.kind for t in tokens] == [TokenKind.INTEGER, TokenKind.EOF]
	assert table.get("integer") is None


@pytest.mark.parametrize(
	"source,kind",
	[
		("MODELO", TokenKind.MODELO),
		("modelo", TokenKind.MODELO),
		("Begin", TokenKind.BEGIN),
		("begin#", TokenKind.BEGIN),
		("WHILE", TokenKind.WHILE),
		("continue", TokenKind.CONTINUE),
		("true", TokenKind.TRUE),
		("False", TokenKind.FALSE),
	],
)
def test_reserved_words_are_case_insensitive(source, kind):
	tokens = tokenize(source)
	assert tokens[0].kind == kind
	assert tokens[0].lexeme == source


def test_hash_marker_closes_identifier():
	assert pairs("ab#cd") == [
		(TokenKind.IDENTIFIER, "ab#"),
		(TokenKind.IDENTIFIER, "cd"),
		(TokenKind.EOF, ""),
	]


@pytest.mark.parametrize(
	"source,kind",
	[
		("<=", TokenKind.LESS_EQUAL),
		(">=", TokenKind.GREATER_EQUAL),
		("!=", TokenKind.NOT_EQUAL),
		(":=", TokenKind.ASSIGN),
		("<", TokenKind.LESS),
		(">", TokenKind.GREATER),
		(":", TokenKind.COLON),
		("=", TokenKind.EQUAL),
	],
)
def test_operators(source, kind):
	assert pairs(source) == [(kind, source), (TokenKind.EOF, "")]


def test_less_than_followed_by_other_character_stays_alone():
	assert [t.kind for t in tokenize("<5")] == [TokenKind.LESS, TokenKind.NUMBER, TokenKind.EOF]
	assert [t.kind for t in tokenize("< =")] == [TokenKind.LESS, TokenKind.EQUAL, TokenKind.EOF]


def test_numbers_stop_at_first_non_digit():
	assert pairs("0042ab") == [
		(TokenKind.NUMBER, "0042"),
		(TokenKind.IDENTIFIER, "ab"),
		(TokenKind.EOF, ""),
	]


def test_lone_bang_is_a_lexical_error():
	with pytest.raises(LexicalError) as excinfo:
		tokenize("!")
	assert excinfo.value.code == "E102"
	assert (excinfo.value.line, excinfo.value.column) == (1, 1)


def test_invalid_character_reports_its_position():
	with pytest.raises(LexicalError) as excinfo:
		tokenize("x\n  @")
	assert excinfo.value.code == "E101"
	assert (excinfo.value.line, excinfo.value.column) == (2, 3)
	assert "'@'" in excinfo.value.message


def test_lines_and_columns_are_tracked():
	tokens = tokenize("MODELO begin\n  var integer x;\nend")
	var = tokens[2]
	assert var.kind == TokenKind.VAR
	assert (var.line, var.column) == (2, 3)
	end = tokens[-2]
	assert end.kind == TokenKind.END
	assert (end.line, end.column) == (3, 1)
	assert tokens[-1].kind == TokenKind.EOF


def test_source_length_limit():
	with pytest.raises(LexicalError) as excinfo:
		Lexer("begin", max_length=3).tokenize()
	assert excinfo.value.code == "E103"


identifiers = st.from_regex(r"[A-Za-z_][A-Za-z0-9_]{0,12}", fullmatch=True).filter(
	lambda s: s.upper() not in reserved_words
)


@given(name=identifiers)
def test_any_identifier_scans_to_one_identifier_token(name: str) -> None:
	tokens = tokenize(name)
	assert [(t.kind, t.lexeme) for t in tokens] == [(TokenKind.IDENTIFIER, name), (TokenKind.EOF, "")]


vocabulary = st.sampled_from(
	[
		"MODELO", "begin", "end", "var", "integer", "boolean", "x", "y_2", "flag#",
		"42", "7", ":=", ";", "(", ")", "+", "-", "*", "/", "=", "!=", "<", "<=",
		">", ">=", ":", ",",
	]
)


@given(words=st.lists(vocabulary, max_size=30), separator=st.sampled_from([" ", "\n", "\t ", "  \n "]))
def test_lexemes_round_trip_modulo_whitespace(words: list[str], separator: str) -> None:
	source = separator.join(words)
	tokens = tokenize(source)
	assert tokens[-1].kind == TokenKind.EOF
	assert " ".join(t.lexeme for t in tokens[:-1]) == " ".join(source.split())
