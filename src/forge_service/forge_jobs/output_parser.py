"""
Output Parser

Converts raw forge output into a JobResult. Structured JSON is preferred;
when it is missing or malformed the parser falls back to scanning
``Error:`` lines. ``Warning:`` lines are always collected from the text.
The parser never raises on bad tool output.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from .models import JobKind
from .schemas import Artifact, JobError, JobResult, TestOutcome

logger = logging.getLogger(__name__)

_ERROR_LINE = re.compile(r"^\s*Error(?:\s*\([^)]*\))?\s*:\s*(.+?)\s*$", re.MULTILINE)
_WARNING_LINE = re.compile(r"^\s*Warning(?:\s*\([^)]*\))?\s*:\s*(.+?)\s*$", re.MULTILINE)
_LOCATION = re.compile(r"-->\s*([^\s:]+):(\d+):(\d+)")

_PASSED_STATUSES = {"success", "passed", "pass"}


def extract_json(output: str) -> Optional[Any]:
    """Parse the outermost ``{...}`` span of the output, or None."""
    start = output.find("{")
    end = output.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        return json.loads(output[start:end + 1])
    except ValueError as e:
        logger.debug(f"Embedded JSON did not parse: {e}")
        return None


def extract_text_errors(output: str) -> List[JobError]:
    return [JobError(message=m) for m in _ERROR_LINE.findall(output)]


def extract_text_warnings(output: str) -> List[str]:
    return _WARNING_LINE.findall(output)


def _location(entry: Dict[str, Any]) -> Tuple[str, int, int]:
    formatted = entry.get("formattedMessage") or ""
    match = _LOCATION.search(formatted)
    if match:
        return match.group(1), int(match.group(2)), int(match.group(3))
    source = entry.get("sourceLocation") or {}
    return source.get("file", "") or "", int(source.get("start") or 0), 0


def _parse_compile(parsed: Dict[str, Any], result: JobResult) -> None:
    for entry in parsed.get("errors") or []:
        if not isinstance(entry, dict):
            continue
        file, line, column = _location(entry)
        message = entry.get("message") or entry.get("formattedMessage") or "Unknown compiler error"
        if (entry.get("severity") or "error").lower() == "error":
            result.errors.append(JobError(file=file, line=line, column=column, message=message))
        else:
            result.warnings.append(message)

    for _source, contracts in (parsed.get("contracts") or {}).items():
        if not isinstance(contracts, dict):
            continue
        for name, data in contracts.items():
            # Newer forge versions wrap each contract in a list of {contract, version}
            if isinstance(data, list):
                data = data[0].get("contract", {}) if data and isinstance(data[0], dict) else {}
            if not isinstance(data, dict):
                continue
            bytecode = ((data.get("evm") or {}).get("bytecode") or {}).get("object", "")
            result.artifacts.append(
                Artifact(contract_name=name, bytecode=bytecode or "", abi=data.get("abi") or [])
            )


def _gas_of(test: Dict[str, Any]) -> Optional[int]:
    if test.get("gasUsed") is not None:
        return int(test["gasUsed"])
    kind = test.get("kind") or {}
    if "Unit" in kind:
        return kind["Unit"].get("gas")
    if "Fuzz" in kind:
        return kind["Fuzz"].get("mean_gas")
    return None


def _duration_ms(raw: Any) -> Optional[float]:
    if isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(raw, dict) and "secs" in raw:
        return raw.get("secs", 0) * 1000.0 + raw.get("nanos", 0) / 1_000_000.0
    return None


def _test_suites(parsed: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    if "testResults" in parsed or "tests" in parsed:
        return parsed.get("testResults") or parsed.get("tests") or {}
    # forge test --json: {"<file>:<Contract>": {"test_results": {...}, ...}}
    return {
        suite: data["test_results"]
        for suite, data in parsed.items()
        if isinstance(data, dict) and isinstance(data.get("test_results"), dict)
    }


def _parse_test(parsed: Dict[str, Any], result: JobResult) -> None:
    for _suite, tests in _test_suites(parsed).items():
        if not isinstance(tests, dict):
            continue
        for name, test in tests.items():
            if not isinstance(test, dict):
                continue
            logs = test.get("decoded_logs") or test.get("logs") or []
            result.test_results.append(
                TestOutcome(
                    name=name,
                    passed=str(test.get("status", "")).lower() in _PASSED_STATUSES,
                    gas_used=_gas_of(test),
                    duration_ms=_duration_ms(test.get("duration")),
                    logs=[entry for entry in logs if isinstance(entry, str)],
                    error=test.get("reason"),
                )
            )
    if result.test_results:
        result.success = all(t.passed for t in result.test_results)
    if isinstance(parsed.get("gasReport"), dict):
        result.gas_report = parsed["gasReport"]


def _parse_script(parsed: Dict[str, Any], result: JobResult) -> None:
    result.logs = [entry for entry in parsed.get("logs") or [] if isinstance(entry, str)]
    if parsed.get("success") is False:
        result.success = False


def parse_tool_output(kind: str, output: str, process_success: bool) -> JobResult:
    """
    Build a structured result from raw tool output.

    Args:
        kind: compile, test or script
        output: Combined stdout/stderr text
        process_success: Whether the tool exited cleanly

    Returns:
        JobResult; success is forced False whenever any error was extracted
    """
    result = JobResult(success=process_success)
    parsed = extract_json(output)

    if isinstance(parsed, dict):
        try:
            if kind == JobKind.COMPILE.value:
                _parse_compile(parsed, result)
            elif kind == JobKind.TEST.value:
                _parse_test(parsed, result)
            elif kind == JobKind.SCRIPT.value:
                _parse_script(parsed, result)
        except (TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Structured output had an unexpected shape, using text fallback: {e}")
            result = JobResult(success=process_success, errors=extract_text_errors(output))
    else:
        result.errors = extract_text_errors(output)

    for warning in extract_text_warnings(output):
        if warning not in result.warnings:
            result.warnings.append(warning)

    if result.errors:
        result.success = False
    return result
