"""Tests for forge output parsing."""
import json

from forge_service.forge_jobs.output_parser import extract_json, parse_tool_output


def test_text_fallback_collects_errors_and_warnings():
    result = parse_tool_output("compile", "Error: foo\nWarning: bar", False)
    assert [e.message for e in result.errors] == ["foo"]
    assert result.warnings == ["bar"]
    assert result.success is False


def test_malformed_json_falls_back_to_text():
    output = 'Compiling...\n{"errors": [\nError (2314): Expected ";"\n'
    result = parse_tool_output("compile", output, False)
    assert [e.message for e in result.errors] == ['Expected ";"']


def test_clean_output_without_json_is_success():
    result = parse_tool_output("compile", "Compiling 1 files\nCompiler run successful!", True)
    assert result.success is True
    assert result.errors == []


def test_errors_force_failure_even_on_zero_exit():
    result = parse_tool_output("script", "Error: script failed", True)
    assert result.success is False


def test_compile_json_extracts_errors_with_location_and_artifacts():
    document = {
        "errors": [
            {
                "severity": "error",
                "message": "Undeclared identifier.",
                "formattedMessage": "DeclarationError: Undeclared identifier.\n --> src/Counter.sol:12:9:\n",
            },
            {"severity": "warning", "message": "Unused local variable."},
        ],
        "contracts": {
            "src/Counter.sol": {
                "Counter": {
                    "abi": [{"type": "function", "name": "increment"}],
                    "evm": {"bytecode": {"object": "0x6080"}},
                }
            },
            "src/Token.sol": {
                "Token": [{"contract": {"abi": [], "evm": {"bytecode": {"object": "0x60a0"}}}, "version": "0.8.28"}]
            },
        },
    }
    result = parse_tool_output("compile", "Compiling...\n" + json.dumps(document), False)

    assert len(result.errors) == 1
    error = result.errors[0]
    assert (error.file, error.line, error.column) == ("src/Counter.sol", 12, 9)
    assert error.message == "Undeclared identifier."
    assert result.warnings == ["Unused local variable."]
    assert {a.contract_name: a.bytecode for a in result.artifacts} == {"Counter": "0x6080", "Token": "0x60a0"}
    assert result.success is False


def test_forge_test_json_suites():
    document = {
        "test/Counter.t.sol:CounterTest": {
            "duration": "1ms",
            "test_results": {
                "test_Increment()": {
                    "status": "Success",
                    "reason": None,
                    "decoded_logs": ["count: 1"],
                    "kind": {"Unit": {"gas": 31303}},
                    "duration": {"secs": 0, "nanos": 2500000},
                },
                "testFuzz_SetNumber(uint256)": {
                    "status": "Failure",
                    "reason": "assertion failed",
                    "decoded_logs": [],
                    "kind": {"Fuzz": {"runs": 256, "mean_gas": 32000, "median_gas": 31900}},
                },
            },
        }
    }
    result = parse_tool_output("test", json.dumps(document), False)

    by_name = {t.name: t for t in result.test_results}
    assert by_name["test_Increment()"].passed is True
    assert by_name["test_Increment()"].gas_used == 31303
    assert by_name["test_Increment()"].duration_ms == 2.5
    assert by_name["test_Increment()"].logs == ["count: 1"]
    assert by_name["testFuzz_SetNumber(uint256)"].passed is False
    assert by_name["testFuzz_SetNumber(uint256)"].gas_used == 32000
    assert by_name["testFuzz_SetNumber(uint256)"].error == "assertion failed"
    assert result.success is False
    assert result.errors == []


def test_test_results_with_gas_report():
    document = {
        "testResults": {"CounterTest": {"test_Increment": {"status": "passed", "gasUsed": 100}}},
        "gasReport": {"Counter": {"increment": {"min": 1, "max": 2}}},
    }
    result = parse_tool_output("test", json.dumps(document), True)
    assert result.success is True
    assert result.test_results[0].gas_used == 100
    assert result.gas_report == {"Counter": {"increment": {"min": 1, "max": 2}}}


def test_script_json_logs():
    result = parse_tool_output("script", '{"success": true, "logs": ["deployed at 0x1"]}', True)
    assert result.logs == ["deployed at 0x1"]
    assert result.success is True


def test_warnings_are_not_duplicated():
    document = {"errors": [{"severity": "warning", "message": "shadowed"}], "contracts": {}}
    output = "Warning: shadowed\n" + json.dumps(document)
    result = parse_tool_output("compile", output, True)
    assert result.warnings == ["shadowed"]


def test_unexpected_json_shape_never_raises():
    result = parse_tool_output("compile", '{"errors": [{"severity": 5}]}\nError: boom', False)
    assert result.success is False
    assert [e.message for e in result.errors] == ["boom"]


def test_extract_json_returns_none_without_braces():
    assert extract_json("no json here") is None
