"""Tests for AST loading, compilation and contract extraction."""

import json

import pytest
import solcx
from solcx.exceptions import DownloadError, SolcError

import ast_factory as f
from dosscan.analysis.ast_parser import (
    ASTJSONParser,
    LineIndex,
    LineMapper,
    ParseError,
    SolcParser,
    SourceUnit,
    extract_contracts,
    load_ast_json,
)
from dosscan.config import settings


class TestLoadASTJson:
    """Accepted AST document shapes."""

    def test_bare_source_unit(self):
        unit = f.source_unit(f.contract("A"), path="A.sol")

        [loaded] = load_ast_json(unit)

        assert loaded.name == "A.sol"
        assert loaded.ast is unit

    def test_standard_json_output(self):
        unit = f.source_unit(f.contract("A"), path="A.sol")

        [loaded] = load_ast_json({"sources": {"A.sol": {"id": 0, "ast": unit}}})

        assert loaded.name == "A.sol"
        assert loaded.file_index == 0

    def test_combined_json_output(self):
        """solc --combined-json ast uses an upper-case key."""
        unit = f.source_unit(f.contract("B"), path="B.sol")

        [loaded] = load_ast_json({"sources": {"B.sol": {"AST": unit}}, "version": "0.8.26"})

        assert loaded.name == "B.sol"

    def test_compiler_errors_are_raised(self):
        data = {
            "errors": [
                {"severity": "warning", "message": "unused variable"},
                {"severity": "error", "formattedMessage": "ParserError: Expected ';'"},
            ]
        }

        with pytest.raises(ParseError) as exc_info:
            load_ast_json(data, "broken.json")

        assert exc_info.value.message == "ParserError: Expected ';'"
        assert exc_info.value.source_name == "broken.json"

    def test_document_without_unit(self):
        with pytest.raises(ParseError):
            load_ast_json({"contracts": {}}, "empty.json")

        with pytest.raises(ParseError):
            load_ast_json([], "list.json")


class TestASTJSONParser:
    """Loading AST files from text."""

    def test_invalid_json_reports_position(self):
        with pytest.raises(ParseError) as exc_info:
            ASTJSONParser().parse_sync('{\n  "nodeType": ', "bad.json")

        error = exc_info.value
        assert error.line == 2
        assert error.location.startswith("bad.json:2")
        assert error.to_dict()["source"] == "bad.json"

    @pytest.mark.asyncio
    async def test_async_parse(self):
        text = json.dumps(f.source_unit(f.contract("A"), path="A.sol"))

        units = await ASTJSONParser().parse(text, "A.json")

        assert [u.name for u in units] == ["A.sol"]

    def test_size_limit(self, monkeypatch):
        monkeypatch.setattr(settings, "max_source_bytes", 10)

        with pytest.raises(ParseError, match="limit is 10"):
            ASTJSONParser().parse_sync(json.dumps(f.source_unit()), "big.json")


class TestParseError:
    """Error location formatting."""

    def test_location_variants(self):
        assert ParseError("x").location == ""
        assert ParseError("x", "A.sol").location == "A.sol"
        assert ParseError("x", "A.sol", 3).location == "A.sol:3"
        assert str(ParseError("x", "A.sol", 3, 7)) == "A.sol:3:7: x"

    def test_to_dict(self):
        assert ParseError("bad", "A.sol", 1, 2).to_dict() == {
            "message": "bad",
            "source": "A.sol",
            "line": 1,
            "column": 2,
        }


class TestLineMapping:
    """Byte offsets to lines."""

    def test_line_index(self):
        index = LineIndex("a\nbc\n")

        assert index.position(0) == (1, 1)
        assert index.position(3) == (2, 2)
        assert index.position(5) == (3, 1)

    def test_line_mapper(self):
        text = "pragma solidity ^0.8.0;\ncontract A {}\n"
        unit = SourceUnit(name="A.sol", ast=f.source_unit(), source_text=text, file_index=0)
        mapper = LineMapper([unit])

        assert mapper.line_of("24:13:0") == 2
        assert mapper.line_of("0:5:1") == 0
        assert mapper.line_of("bogus") == 0
        assert mapper.line_of(None) == 0


class TestExtractContracts:
    """Contract declarations with inheritance resolved."""

    def test_interfaces_are_skipped(self):
        unit = f.source_unit(f.contract("IToken", kind="interface"), f.contract("Token"))

        contracts = extract_contracts([SourceUnit(name="T.sol", ast=unit)])

        assert [c.name for c in contracts] == ["Token"]

    def test_abstract_and_library_kinds(self):
        unit = f.source_unit(
            f.contract("Base", abstract=True),
            f.contract("Math", kind="library"),
        )

        base, math = extract_contracts([SourceUnit(name="T.sol", ast=unit)])

        assert base.kind == "abstract"
        assert math.kind == "library"
        assert base.libraries == {"Math"}

    def test_inherited_members(self):
        """Overrides replace the base function in place; state and modifiers are inherited."""
        base_pay = f.function("pay")
        base_refund = f.function("refund", params=(f.param("amount"),))
        base = f.contract(
            "Base",
            f.state_var("owner", "address"),
            f.modifier("onlyOwner", f.placeholder()),
            base_pay,
            base_refund,
        )
        derived_pay = f.function("pay")
        derived = f.contract("Vault", f.state_var("total"), derived_pay, bases=(base,))
        unit = f.source_unit(base, derived)

        vault = extract_contracts([SourceUnit(name="V.sol", ast=unit)])[1]

        assert vault.name == "Vault"
        assert [v["name"] for v in vault.state_vars] == ["owner", "total"]
        assert vault.functions == [derived_pay, base_refund]
        assert vault.overridden == [("Base", base_pay)]
        assert list(vault.modifiers) == ["onlyOwner"]
        assert vault.source_name == "V.sol"

    def test_missing_base_uses_contract_alone(self):
        """Bases outside the parse are ignored."""
        orphan = f.contract("Child", f.function("go"))
        orphan["linearizedBaseContracts"].append(999999)

        [child] = extract_contracts([SourceUnit(name="C.sol", ast=f.source_unit(orphan))])

        assert [fn["name"] for fn in child.functions] == ["go"]


class TestSolcParser:
    """Compilation through py-solc-x with the compiler calls replaced."""

    SOURCE = "contract A {\nuint x\n}"

    @pytest.fixture
    def installed(self, monkeypatch):
        monkeypatch.setattr(solcx, "get_installed_solc_versions", lambda: ["0.8.26"])

    def test_compiles_and_keeps_source_text(self, installed, monkeypatch):
        unit = f.source_unit(f.contract("A"), path="A.sol")
        captured = {}

        def compile_standard(input_json, **kwargs):
            captured.update(kwargs)
            return {"sources": {"A.sol": {"id": 0, "ast": unit}}, "errors": []}

        monkeypatch.setattr(solcx, "compile_standard", compile_standard)

        [parsed] = SolcParser(solc_version="0.8.26").parse_sync(self.SOURCE, "A.sol")

        assert parsed.source_text == self.SOURCE
        assert parsed.file_index == 0
        assert captured["solc_version"] == "0.8.26"

    def test_compile_error_has_line(self, installed, monkeypatch):
        def compile_standard(input_json, **kwargs):
            raise SolcError(
                message="compilation failed",
                command=["solc", "--standard-json"],
                return_code=1,
                stdin_data="",
                stdout_data="",
                stderr_data="",
                error_dict=[
                    {
                        "severity": "error",
                        "message": "Expected ';' but got '}'",
                        "sourceLocation": {"file": "A.sol", "start": 13, "end": 19},
                    }
                ],
            )

        monkeypatch.setattr(solcx, "compile_standard", compile_standard)

        with pytest.raises(ParseError) as exc_info:
            SolcParser(solc_version="0.8.26").parse_sync(self.SOURCE, "A.sol")

        assert exc_info.value.message == "Expected ';' but got '}'"
        assert (exc_info.value.line, exc_info.value.column) == (2, 1)

    def test_missing_compiler_without_install(self, monkeypatch):
        monkeypatch.setattr(solcx, "get_installed_solc_versions", lambda: [])

        with pytest.raises(ParseError, match="not installed"):
            SolcParser(solc_version="0.8.26", auto_install=False).parse_sync(self.SOURCE, "A.sol")

    def test_install_failure(self, monkeypatch):
        calls = []

        def install_solc(version):
            calls.append(version)
            raise DownloadError("offline")

        monkeypatch.setattr(solcx, "get_installed_solc_versions", lambda: [])
        monkeypatch.setattr(solcx, "install_solc", install_solc)
        monkeypatch.setattr(settings, "solc_install_retries", 1)

        with pytest.raises(ParseError, match="could not install"):
            SolcParser(solc_version="0.8.26", auto_install=True).parse_sync(self.SOURCE, "A.sol")

        assert calls == ["0.8.26"]

    @pytest.mark.asyncio
    async def test_async_parse_installs_once(self, monkeypatch):
        installs = []
        unit = f.source_unit(f.contract("A"), path="A.sol")
        monkeypatch.setattr(solcx, "get_installed_solc_versions", lambda: [])
        monkeypatch.setattr(solcx, "install_solc", lambda version: installs.append(version))
        monkeypatch.setattr(
            solcx,
            "compile_standard",
            lambda input_json, **kwargs: {"sources": {"A.sol": {"id": 0, "ast": unit}}},
        )

        units = await SolcParser(solc_version="0.8.26").parse(self.SOURCE, "A.sol")

        assert installs == ["0.8.26"]
        assert len(units) == 1
