from crisp.crisp_runtime import ExecutionResult, ScriptRunner
from crisp.crisp_parser import parse, parse_partial

__all__ = ["ExecutionResult", "ScriptRunner", "parse", "parse_partial"]
