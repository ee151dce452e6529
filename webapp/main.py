from __future__ import annotations

import logging
import os
import time
from dataclasses import is_dataclass
from enum import Enum
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse
from pydantic import BaseModel

from modelo_compiler import CompilationError, CompilerOptions, Diagnostic, ModeloCompiler, Token, TokenKind


LOG_LEVEL = os.environ.get("MODELO_LOG_LEVEL", "INFO").upper()
MAX_SOURCE_LENGTH = int(os.environ.get("MODELO_MAX_SOURCE_LENGTH", "1000000"))

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


app = FastAPI(title="MODELO Compiler Front End", version="1.0.0")

app.add_middleware(
	CORSMiddleware,
	allow_origins=["*"],
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)


class CompileRequest(BaseModel):
	source: str
	# false: keep analysing after a semantic error and report all of them
	fail_fast: bool = True


class TokensRequest(BaseModel):
	source: str


def _to_json(obj: Any) -> Any:
	"""Convert AST nodes to JSON-safe structures.

	The parser bounds how deep a tree can be, so the whole AST is always emitted.
	"""
	if obj is None:
		return None
	if isinstance(obj, (str, int, float, bool)):
		return obj
	if isinstance(obj, Enum):
		return obj.value if isinstance(obj.value, str) else obj.name
	if isinstance(obj, (list, tuple)):
		return [_to_json(x) for x in obj]
	if isinstance(obj, dict):
		return {str(k): _to_json(v) for k, v in obj.items()}
	if is_dataclass(obj):
		data: Dict[str, Any] = {"_type": obj.__class__.__name__}
		for k, v in obj.__dict__.items():
			data[k] = _to_json(v)
		return data
	return str(obj)


def _diagnostic_json(d: Diagnostic) -> Dict[str, Any]:
	return {
		"code": d.code,
		"stage": d.stage,
		"message": d.message,
		"hint": d.hint,
		"line": d.line,
		"column": d.column,
	}


def _tokens_json(tokens: List[Token]) -> List[Dict[str, Any]]:
	return [
		{"kind": t.kind.name, "lexeme": t.lexeme, "line": t.line, "column": t.column}
		for t in tokens
		if t.kind != TokenKind.EOF
	]


@app.get("/", response_class=HTMLResponse)
def index() -> HTMLResponse:
	return HTMLResponse(
		"<h2>MODELO Compiler API</h2><p>POST <code>/api/compile</code> with JSON: <code>{\"source\": \"...\"}</code></p>"
	)


@app.get("/health")
def health() -> Dict[str, str]:
	return {"status": "ok"}


# plain dicts, serialized without a response model
@app.post("/api/compile", response_model=None)
def compile_program(req: CompileRequest) -> Dict[str, Any]:
	compiler = ModeloCompiler(CompilerOptions(fail_fast=req.fail_fast, max_source_length=MAX_SOURCE_LENGTH))
	start = time.perf_counter()
	try:
		art = compiler.compile(req.source)
	except CompilationError as error:
		logger.info("Rejected program: %s", error)
		return {
			"ok": False,
			"duration_ms": (time.perf_counter() - start) * 1000,
			"token_count": None,
			"diagnostics": [_diagnostic_json(d) for d in error.to_diagnostics()],
			"tokens": [],
			"ast": None,
			"symbols": None,
		}
	logger.info("Accepted program (%d tokens, %.2f ms)", len(art.tokens) - 1, art.duration_ms)
	return {
		"ok": True,
		"duration_ms": art.duration_ms,
		"token_count": len(art.tokens) - 1,
		"diagnostics": [],
		"tokens": _tokens_json(art.tokens),
		"ast": _to_json(art.ast),
		"symbols": art.symbols.snapshot(),
	}


@app.post("/api/tokens")
def tokenize_source(req: TokensRequest) -> Dict[str, Any]:
	compiler = ModeloCompiler(CompilerOptions(max_source_length=MAX_SOURCE_LENGTH))
	try:
		tokens = compiler.tokenize(req.source)
	except CompilationError as error:
		logger.info("Rejected source: %s", error)
		return {"ok": False, "tokens": [], "diagnostics": [_diagnostic_json(d) for d in error.to_diagnostics()]}
	return {"ok": True, "tokens": _tokens_json(tokens), "diagnostics": []}
