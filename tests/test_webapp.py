from fastapi.testclient import TestClient

from webapp.main import app


client = TestClient(app)


VALID = """
MODELO begin
	var integer x := 1;
	procedure show(v: integer);
	begin
		read(v);
	end;
	while (x < 10) do begin x := x * 2; end
	show(x);
end
"""


def test_health():
	response = client.get("/health")
	assert response.status_code == 200
	assert response.json() == {"status": "ok"}


def test_index():
	response = client.get("/")
	assert response.status_code == 200
	assert "MODELO" in response.text


def test_compile_valid_program():
	response = client.post("/api/compile", json={"source": VALID})
	assert response.status_code == 200
	body = response.json()
	assert body["ok"] is True
	assert body["diagnostics"] == []
	assert body["token_count"] == len(body["tokens"])
	assert body["tokens"][0] == {"kind": "MODELO", "lexeme": "MODELO", "line": 2, "column": 1}
	ast = body["ast"]
	assert ast["_type"] == "Program"
	declaration = ast["block"]["variable_declarations"][0]
	assert declaration["identifier"] == "x"
	assert declaration["type"] == "integer"
	assert declaration["initial_value"] == {"_type": "Literal", "line": 3, "column": 19, "value": 1}
	assert [s["_type"] for s in ast["block"]["statements"]] == ["WhileLoop", "ProcedureCall"]
	frames = body["symbols"]
	assert [f["scope"] for f in frames] == ["global", "show"]
	show = next(s for s in frames[0]["symbols"] if s["name"] == "show")
	assert show["category"] == "procedure"
	assert show["parameters"] == [{"name": "v", "type": "integer"}]


def test_compile_lexical_error():
	response = client.post("/api/compile", json={"source": "MODELO begin x := 1 ! end"})
	body = response.json()
	assert response.status_code == 200
	assert body["ok"] is False
	assert body["ast"] is None
	assert body["symbols"] is None
	assert body["diagnostics"] == [
		{
			"code": "E102",
			"stage": "lexical",
			"message": "Incomplete operator '!'.",
			"hint": "Use '!=' for inequality.",
			"line": 1,
			"column": 21,
		}
	]


def test_compile_syntax_error():
	body = client.post("/api/compile", json={"source": "MODELO begin x := 1 end"}).json()
	assert body["ok"] is False
	(diagnostic,) = body["diagnostics"]
	assert diagnostic["stage"] == "syntax"
	assert diagnostic["code"] == "E201"
	assert diagnostic["column"] == 21


def test_compile_collects_semantic_errors_on_request():
	source = "MODELO begin var integer x; var boolean b; x := true; b := 1; end"
	fail_fast = client.post("/api/compile", json={"source": source}).json()
	assert [d["code"] for d in fail_fast["diagnostics"]] == ["E301"]
	collected = client.post("/api/compile", json={"source": source, "fail_fast": False}).json()
	assert collected["ok"] is False
	assert [d["code"] for d in collected["diagnostics"]] == ["E301", "E301"]
	assert all(d["stage"] == "semantic" for d in collected["diagnostics"])


def test_compile_requires_source():
	response = client.post("/api/compile", json={})
	assert response.status_code == 422


def test_tokens_endpoint():
	body = client.post("/api/tokens", json={"source": "a <= b#c"}).json()
	assert body["ok"] is True
	assert [(t["kind"], t["lexeme"]) for t in body["tokens"]] == [
		("IDENTIFIER", "a"),
		("LESS_EQUAL", "<="),
		("IDENTIFIER", "b#"),
		("IDENTIFIER", "c"),
	]


def test_tokens_endpoint_reports_lexical_errors():
	body = client.post("/api/tokens", json={"source": "a ? b"}).json()
	assert body["ok"] is False
	assert body["tokens"] == []
	assert body["diagnostics"][0]["code"] == "E101"
	assert body["diagnostics"][0]["column"] == 3


def test_compile_returns_the_whole_ast_for_long_expressions():
	terms = " + ".join(["1"] * 200)
	body = client.post("/api/compile", json={"source": f"MODELO begin var integer x; x := {terms}; end"}).json()
	assert body["ok"] is True
	node = body["ast"]["block"]["statements"][0]["value"][0]
	operators = 0
	while node["_type"] == "BinaryOp":
		assert node["operator"] == "+"
		assert node["right"]["_type"] == "Literal"
		node = node["left"]
		operators += 1
	assert operators == 199
	assert node == {"_type": "Literal", "line": 1, "column": 34, "value": 1}


def test_compile_reports_excessive_nesting_as_a_syntax_error():
	source = "MODELO begin var integer x := " + "(" * 300 + "1" + ")" * 300 + "; end"
	response = client.post("/api/compile", json={"source": source})
	assert response.status_code == 200
	body = response.json()
	assert body["ok"] is False
	assert [(d["stage"], d["code"]) for d in body["diagnostics"]] == [("syntax", "E203")]
