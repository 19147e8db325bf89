#!/usr/bin/env python
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "loguru>=0.7",
#   "polars>=1.36.1",
#   "pydantic>=2.0",
#   "pyodbc>=5.0",
#   "pyyaml>=6.0",
# ]
# ///
"""
SQL Server Query Job

Runs one SQL statement against SQL Server on behalf of a job host and reports
progress, results and a final status on stdout, one JSON message per line.

The request arrives on stdin as {"params": {...}}. Parameter names are matched
case-insensitively:

    server, database, username, password, query   required
    maxRows                                       optional, 0 or absent means unlimited
    exportFormat                                  CSV (default) or JSON
    useEncryption, trustCertificate, debug        optional flags

Rows are written to a uniquely named file in the working directory and, while
their CSV rendering stays under 1 MiB, also returned inline. Diagnostics go to
stderr only; the host never parses them.

Settings that are not part of a request (ODBC driver, login timeout, output
directory) can be supplied in a YAML file named by SQL_QUERY_JOB_CONFIG.

Usage:
    echo '{"params": {"server": "db01", "database": "sales", "username": "report", "password": "...", "query": "SELECT * FROM orders", "maxRows": 100}}' | uv run scripts/run_sql_query.py
"""

from __future__ import annotations

import importlib
import json
import math
import os
import re
import secrets
import sys
import time
import warnings
from datetime import date, datetime, time as dt_time
from decimal import Decimal
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, ClassVar, Dict, List, Literal, Optional, Protocol, TextIO

import polars as pl
import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

PROTOCOL_MARKER = "protocol"
PROTOCOL_VERSION = "sqljob/1"

CONFIG_ENV_VAR = "SQL_QUERY_JOB_CONFIG"
DEFAULT_ODBC_DRIVER = "ODBC Driver 18 for SQL Server"
DEFAULT_LOGIN_TIMEOUT = 30
DEFAULT_APPLICATION_NAME = "sql-server-query-job"

INLINE_CSV_LIMIT = 1_048_576
EXPORT_FILE_PREFIX = "query_results"

REQUIRED_PARAMS = ("server", "database", "username", "password", "query")
OPTIONAL_PARAMS = ("maxRows", "exportFormat", "useEncryption", "trustCertificate", "debug")

# Never shown on the diagnostic channel
REDACTED_KEYS = {"password"}
OMITTED_KEYS = {"script", "payload"}
REDACTION = "********"

TRUTHY_STRINGS = {"true", "1", "yes", "on"}

# Leading SELECT, optionally followed by an existing TOP n / TOP (n) clause
ROW_LIMIT_PATTERN = re.compile(
    r"^(?P<select>\s*SELECT\s+)(?P<top>TOP\s*\(\s*\d+\s*\)\s*|TOP\s+\d+\s*)?",
    re.IGNORECASE,
)

# Environment variable pattern for ${VAR_NAME} substitution
ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


# =============================================================================
# Errors
# =============================================================================


class ErrorCode(IntEnum):
    """Status codes reported in the terminal error message."""

    INVALID_INPUT = 1
    INVALID_PARAMETERS = 2
    DEPENDENCY_UNAVAILABLE = 3
    EXECUTION_FAILED = 4
    UNEXPECTED = 5


class JobError(Exception):
    """A failure that ends the job with a protocol error code."""

    code: ClassVar[ErrorCode] = ErrorCode.UNEXPECTED

    def __init__(self, description: str):
        super().__init__(description)
        self.description = description


class InvalidInputError(JobError):
    code = ErrorCode.INVALID_INPUT


class ParameterError(JobError):
    code = ErrorCode.INVALID_PARAMETERS


class DependencyUnavailableError(JobError):
    code = ErrorCode.DEPENDENCY_UNAVAILABLE


class QueryExecutionError(JobError):
    code = ErrorCode.EXECUTION_FAILED


class ProtocolViolation(RuntimeError):
    """Raised when a message would follow the terminal status."""


def format_validation_error(error: ValidationError) -> str:
    """Flatten Pydantic validation errors into 'loc: msg; loc: msg'."""
    details = []
    for err in error.errors():
        loc = " -> ".join(str(x) for x in err.get("loc", []))
        msg = err.get("msg", "")
        details.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(details)


# =============================================================================
# Configuration
# =============================================================================


class JobSettings(BaseModel):
    """Plugin-level settings shared by every request."""

    model_config = ConfigDict(extra="forbid")

    odbc_driver: str = DEFAULT_ODBC_DRIVER
    login_timeout: int = Field(default=DEFAULT_LOGIN_TIMEOUT, ge=0)
    output_dir: Optional[str] = None
    inline_csv_limit: int = Field(default=INLINE_CSV_LIMIT, gt=0)
    application_name: str = DEFAULT_APPLICATION_NAME


def expand_env_vars(value: Any, key: str = "") -> Any:
    """
    Substitute ${VAR_NAME} references in settings values, recursing into
    mappings and lists.

    key is the dotted settings path of value; it names the offending setting
    when a referenced variable is unset (ValueError).
    """
    if isinstance(value, str):

        def substitute(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                where = f" (referenced by '{key}')" if key else ""
                raise ValueError(f"Environment variable not set: {var_name}{where}")
            return env_value

        return ENV_VAR_PATTERN.sub(substitute, value)
    if isinstance(value, dict):
        return {k: expand_env_vars(v, f"{key}.{k}" if key else str(k)) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(item, f"{key}[{i}]") for i, item in enumerate(value)]
    return value


def load_settings_from_yaml(file_path: str) -> JobSettings:
    """
    Read JobSettings from a YAML mapping, expanding ${VAR_NAME} references.

    Raises:
        FileNotFoundError: If the settings file doesn't exist
        yaml.YAMLError: If YAML is malformed
        ValueError: If the file is empty, not a mapping, or references an unset variable
        ValidationError: If settings don't match the schema
    """
    path = Path(file_path)
    if not path.is_file():
        raise FileNotFoundError(f"Settings file not found: {file_path}")

    document = yaml.safe_load(path.read_text(encoding="utf-8"))
    if document is None:
        raise ValueError(f"Settings file is empty: {file_path}")
    if not isinstance(document, dict):
        raise ValueError(f"Settings file must contain a mapping, got {type(document).__name__}")

    return JobSettings.model_validate(expand_env_vars(document))


def load_settings(environ: Optional[Dict[str, str]] = None) -> JobSettings:
    """Settings from the file named by SQL_QUERY_JOB_CONFIG, or defaults when unset."""
    environ = os.environ if environ is None else environ
    file_path = environ.get(CONFIG_ENV_VAR)
    if not file_path:
        return JobSettings()

    try:
        return load_settings_from_yaml(file_path)
    except ValidationError as e:
        raise JobError(f"Invalid settings in {file_path}: {format_validation_error(e)}") from e
    except yaml.YAMLError as e:
        raise JobError(f"Invalid YAML in settings file: {e}") from e
    except (OSError, ValueError) as e:
        raise JobError(f"Could not load settings: {e}") from e


def configure_logging(stream: TextIO, debug: bool = False) -> None:
    """
    Send loguru output to the diagnostic stream; stdout belongs to the protocol.

    Tracebacks are rendered without frame variables: locals hold the raw input
    and the connection string, both of which carry the password.
    """
    logger.remove()
    logger.add(
        stream,
        level="DEBUG" if debug else "INFO",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}",
        colorize=False,
        backtrace=False,
        diagnose=False,
    )


# =============================================================================
# Request Parsing
# =============================================================================


class ExportFormat(str, Enum):
    CSV = "CSV"
    JSON = "JSON"

    @property
    def extension(self) -> str:
        return self.value.lower()


def coerce_flag(value: Any) -> bool:
    """
    Interpret a loosely typed flag.

    Booleans pass through. Strings are true when they read "true", "1", "yes"
    or "on" in any case. Numbers are true when non-zero. Anything else,
    including a missing value, is false.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY_STRINGS
    if isinstance(value, (int, float)):
        return value != 0
    return False


def lookup_param(params: Dict[str, Any], name: str) -> Any:
    """Case-insensitive lookup; an exact match wins over a case variant."""
    if name in params:
        return params[name]
    folded = name.casefold()
    for key, value in params.items():
        if isinstance(key, str) and key.casefold() == folded:
            return value
    return None


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def redact(mapping: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of an input mapping that is safe to write to the diagnostic channel."""
    safe: Dict[str, Any] = {}
    for key, value in mapping.items():
        folded = key.casefold() if isinstance(key, str) else key
        if folded in OMITTED_KEYS:
            continue
        if folded in REDACTED_KEYS:
            safe[key] = REDACTION
        elif isinstance(value, dict):
            safe[key] = redact(value)
        else:
            safe[key] = value
    return safe


class JobRequest(BaseModel):
    """Validated job parameters. Immutable; the query is replaced via model_copy."""

    model_config = ConfigDict(frozen=True)

    server: str
    database: str
    username: str
    password: SecretStr
    query: str
    max_rows: Optional[int] = Field(default=None, alias="maxRows", ge=0)
    export_format: ExportFormat = Field(default=ExportFormat.CSV, alias="exportFormat")
    use_encryption: bool = Field(default=False, alias="useEncryption")
    trust_certificate: bool = Field(default=False, alias="trustCertificate")
    debug: bool = False

    @field_validator("max_rows", mode="before")
    @classmethod
    def parse_max_rows(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        if isinstance(value, bool):
            raise ValueError("must be an integer")
        return value

    @field_validator("export_format", mode="before")
    @classmethod
    def parse_export_format(cls, value: Any) -> Any:
        if is_blank(value):
            return ExportFormat.CSV
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("use_encryption", "trust_certificate", "debug", mode="before")
    @classmethod
    def parse_flag(cls, value: Any) -> bool:
        return coerce_flag(value)


def parse_envelope(raw: str) -> Dict[str, Any]:
    """Decode the input envelope; anything that is not a JSON object is rejected."""
    if not raw or not raw.strip():
        raise InvalidInputError("Invalid JSON input: no input received")
    try:
        envelope = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidInputError(f"Invalid JSON input: {e}") from e

    if not isinstance(envelope, dict):
        raise InvalidInputError("Invalid input: expected a JSON object with a 'params' object")
    params = lookup_param(envelope, "params")
    if params is not None and not isinstance(params, dict):
        raise InvalidInputError("Invalid input: 'params' must be an object")
    return envelope


def request_params(envelope: Dict[str, Any]) -> Dict[str, Any]:
    return lookup_param(envelope, "params") or {}


def parse_job_request(params: Dict[str, Any]) -> JobRequest:
    """
    Build a JobRequest from raw params.

    Every blank or absent required field is reported at once. Only when all of
    them are present are the optional values validated.
    """
    missing = [name for name in REQUIRED_PARAMS if is_blank(lookup_param(params, name))]
    if missing:
        raise ParameterError(f"Missing required parameter(s): {', '.join(missing)}")

    values = {name: lookup_param(params, name) for name in REQUIRED_PARAMS + OPTIONAL_PARAMS}
    try:
        return JobRequest.model_validate(values)
    except ValidationError as e:
        raise ParameterError(f"Invalid parameter value(s): {format_validation_error(e)}") from e


class ConnectionInfo(BaseModel):
    """Everything a QueryExecutor needs to reach the database."""

    model_config = ConfigDict(frozen=True)

    server: str
    database: str
    username: str
    password: SecretStr
    encrypt: bool = False
    trust_server_certificate: bool = False

    @classmethod
    def from_request(cls, request: JobRequest) -> ConnectionInfo:
        return cls(
            server=request.server,
            database=request.database,
            username=request.username,
            password=request.password,
            encrypt=request.use_encryption,
            trust_server_certificate=request.trust_certificate,
        )


# =============================================================================
# Protocol Writer
# =============================================================================


class ProtocolMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    terminal: ClassVar[bool] = False

    def to_wire(self) -> Dict[str, Any]:
        return {PROTOCOL_MARKER: PROTOCOL_VERSION, **self.model_dump()}


class ProgressMessage(ProtocolMessage):
    progress: float = Field(ge=0.0, le=1.0)


class DataMessage(ProtocolMessage):
    data: Dict[str, Any]


class FilesMessage(ProtocolMessage):
    files: List[str]


class SuccessMessage(ProtocolMessage):
    terminal: ClassVar[bool] = True

    code: Literal[0] = 0
    description: str


class ErrorMessage(ProtocolMessage):
    terminal: ClassVar[bool] = True

    code: int = Field(ge=1)
    description: str


class ProtocolWriter:
    """
    Writes protocol messages to the host, one JSON document per line.

    Each message is flushed as soon as it is written so the host can follow the
    job live. Once a terminal message (success or error) has gone out, any
    further emit raises ProtocolViolation. Progress never moves backwards.
    """

    def __init__(self, stream: TextIO):
        self._stream = stream
        self._last_progress = 0.0
        self.terminated = False

    def emit(self, message: ProtocolMessage) -> None:
        if self.terminated:
            raise ProtocolViolation(f"{type(message).__name__} emitted after terminal status")
        line = json.dumps(message.to_wire(), allow_nan=False, default=str)
        self._stream.write(line + "\n")
        self._stream.flush()
        if message.terminal:
            self.terminated = True

    def progress(self, value: float) -> None:
        value = max(value, self._last_progress)
        self.emit(ProgressMessage(progress=value))
        self._last_progress = value

    def data(self, payload: Dict[str, Any]) -> None:
        self.emit(DataMessage(data=payload))

    def files(self, paths: List[str]) -> None:
        self.emit(FilesMessage(files=paths))

    def success(self, description: str) -> None:
        self.emit(SuccessMessage(description=description))

    def error(self, code: int, description: str) -> None:
        self.emit(ErrorMessage(code=int(code), description=description))


# =============================================================================
# Query Rewriter
# =============================================================================


def apply_row_limit(sql: str, limit: Optional[int]) -> str:
    """
    Cap the rows a statement returns by injecting or replacing a leading TOP clause.

    Only a SELECT at the very start of the statement (after whitespace) is
    considered. An existing TOP n / TOP (n) right after it is replaced; otherwise
    TOP is inserted after the SELECT keyword and its whitespace. SELECTs inside
    CTEs or subqueries are left alone, and the result is not checked for validity.
    """
    if limit is None or limit <= 0:
        return sql
    match = ROW_LIMIT_PATTERN.match(sql)
    if match is None:
        return sql
    return f"{match.group('select')}TOP {limit} {sql[match.end():]}"


# =============================================================================
# Result Materializer
# =============================================================================


class ExportArtifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    export_format: ExportFormat
    file_name: str
    file_path: str
    byte_size: int


class MaterializedResult(BaseModel):
    artifact: Optional[ExportArtifact] = None
    payload: Dict[str, Any]


def build_export_file_name(export_format: ExportFormat, now: datetime) -> str:
    """query_results_YYYYMMDD_HHMMSS_mmm_<8 hex>.<ext>; the suffix separates same-millisecond runs."""
    return (
        f"{EXPORT_FILE_PREFIX}_{now:%Y%m%d}_{now:%H%M%S}_{now.microsecond // 1000:03d}"
        f"_{secrets.token_hex(4)}.{export_format.extension}"
    )


def _column_series(rows: List[Dict[str, Any]], column: str) -> pl.Series:
    values = [row.get(column) for row in rows]
    kinds = {type(v) for v in values if v is not None}
    if len(kinds) == 1:
        return pl.Series(column, values)
    # Mixed or all-null column: render as text rather than let polars coerce or drop values
    return pl.Series(column, [_csv_text(v) for v in values], dtype=pl.String)


def _csv_text(value: Any) -> Optional[str]:
    # Booleans read true/false, as polars writes a pure bool column
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def rows_to_frame(rows: List[Dict[str, Any]]) -> pl.DataFrame:
    """Columns follow the first row's keys; keys missing from later rows become null."""
    return pl.DataFrame([_column_series(rows, column) for column in rows[0]])


def render_csv(rows: List[Dict[str, Any]]) -> str:
    if not rows or not rows[0]:
        return ""
    return rows_to_frame(rows).write_csv()


def render_json(rows: List[Dict[str, Any]]) -> str:
    return json.dumps(rows, ensure_ascii=False, indent=2, default=str)


def fits_inline(csv_size: int, limit: int = INLINE_CSV_LIMIT) -> bool:
    return csv_size < limit


def write_export(
    content: bytes, export_format: ExportFormat, output_dir: str | Path, now: datetime
) -> ExportArtifact:
    """
    Write content to a new, uniquely named file in output_dir.

    Files are created exclusively so an existing artifact is never overwritten;
    a clash draws a new suffix. The directory itself is not created.
    """
    directory = Path(output_dir).resolve()
    while True:
        file_name = build_export_file_name(export_format, now)
        path = directory / file_name
        try:
            with open(path, "xb") as f:
                f.write(content)
        except FileExistsError:
            continue
        return ExportArtifact(
            export_format=export_format,
            file_name=file_name,
            file_path=str(path),
            byte_size=len(content),
        )


def materialize(
    rows: List[Dict[str, Any]],
    export_format: ExportFormat,
    output_dir: str | Path,
    *,
    server: str,
    database: str,
    now: Optional[datetime] = None,
    inline_limit: int = INLINE_CSV_LIMIT,
) -> MaterializedResult:
    """
    Export rows to a file and build the payload returned to the host.

    The inline decision is always made on the CSV rendering, whatever the export
    format: CSV under inline_limit bytes is embedded under 'csv', otherwise a
    'message' points at the file. An empty result writes nothing. OSError from
    the write propagates to the caller.
    """
    payload: Dict[str, Any] = {
        "server": server,
        "database": database,
        "rowCount": len(rows),
        "format": export_format.value,
    }
    if not rows:
        return MaterializedResult(payload=payload)

    now = now or datetime.now()
    csv_text = render_csv(rows)
    csv_bytes = csv_text.encode("utf-8")
    if export_format is ExportFormat.JSON:
        content = render_json(rows).encode("utf-8")
    else:
        content = csv_bytes

    artifact = write_export(content, export_format, output_dir, now)
    payload["fileName"] = artifact.file_name
    payload["filePath"] = artifact.file_path
    payload["fileSizeBytes"] = artifact.byte_size

    if fits_inline(len(csv_bytes), inline_limit):
        payload["csv"] = csv_text
    else:
        payload["message"] = (
            f"Result set is {len(csv_bytes):,} bytes as CSV, too large to return inline; "
            f"full results are in {artifact.file_name}"
        )
    return MaterializedResult(artifact=artifact, payload=payload)


# =============================================================================
# Query Execution
# =============================================================================


class QueryExecutor(Protocol):
    """Capability that runs one statement against a database."""

    def ensure_available(self) -> None:
        """Raise DependencyUnavailableError when the capability cannot be used."""
        ...

    def execute(
        self, connection: ConnectionInfo, sql: str, escalate_warnings: bool
    ) -> List[Dict[str, Any]]:
        """Run sql and return its rows; raise QueryExecutionError on any database failure."""
        ...


def quote_odbc_value(value: str) -> str:
    """Brace-quote an ODBC connection string value when it needs it."""
    if value != value.strip() or any(ch in value for ch in ";{}"):
        return "{" + value.replace("}", "}}") + "}"
    return value


def build_connection_string(
    connection: ConnectionInfo, driver: str, application_name: Optional[str] = None
) -> str:
    parts = [
        ("DRIVER", "{" + driver.replace("}", "}}") + "}"),
        ("SERVER", quote_odbc_value(connection.server)),
        ("DATABASE", quote_odbc_value(connection.database)),
        ("UID", quote_odbc_value(connection.username)),
        ("PWD", quote_odbc_value(connection.password.get_secret_value())),
        ("Encrypt", "yes" if connection.encrypt else "no"),
        ("TrustServerCertificate", "yes" if connection.trust_server_certificate else "no"),
    ]
    if application_name:
        parts.append(("APP", quote_odbc_value(application_name)))
    return ";".join(f"{key}={value}" for key, value in parts)


def unique_column_names(names: List[Optional[str]]) -> List[str]:
    """Name unnamed columns Column<n> and suffix repeats so no value is lost in a row mapping."""
    result: List[str] = []
    seen = set()
    for index, name in enumerate(names, start=1):
        candidate = name or f"Column{index}"
        base, counter = candidate, 1
        while candidate in seen:
            counter += 1
            candidate = f"{base}_{counter}"
        seen.add(candidate)
        result.append(candidate)
    return result


def normalize_value(value: Any) -> Any:
    """Turn a driver value into a JSON-safe scalar."""
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date, dt_time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex().upper()
    return str(value)


def fetch_rows(cursor: Any) -> List[Dict[str, Any]]:
    if cursor.description is None:
        return []
    columns = unique_column_names([column[0] for column in cursor.description])
    return [
        dict(zip(columns, (normalize_value(value) for value in row)))
        for row in cursor.fetchall()
    ]


def driver_message(error: BaseException) -> str:
    # pyodbc packs (sqlstate, message) into args
    args = getattr(error, "args", ())
    if len(args) >= 2 and isinstance(args[1], str):
        return args[1]
    return str(error)


class OdbcQueryExecutor:
    """QueryExecutor backed by pyodbc and a SQL Server ODBC driver."""

    def __init__(
        self,
        driver: str = DEFAULT_ODBC_DRIVER,
        login_timeout: int = DEFAULT_LOGIN_TIMEOUT,
        application_name: Optional[str] = DEFAULT_APPLICATION_NAME,
    ):
        self.driver = driver
        self.login_timeout = login_timeout
        self.application_name = application_name
        self._pyodbc: Any = None

    @classmethod
    def from_settings(cls, settings: JobSettings) -> OdbcQueryExecutor:
        return cls(
            driver=settings.odbc_driver,
            login_timeout=settings.login_timeout,
            application_name=settings.application_name,
        )

    def ensure_available(self) -> None:
        if self._pyodbc is not None:
            return
        try:
            module = importlib.import_module("pyodbc")
        except ImportError as e:
            raise DependencyUnavailableError(f"pyodbc could not be loaded: {e}") from e

        installed = list(module.drivers())
        if self.driver not in installed:
            available = ", ".join(installed) or "none"
            raise DependencyUnavailableError(
                f"ODBC driver '{self.driver}' is not installed (available: {available})"
            )
        self._pyodbc = module

    def execute(
        self, connection: ConnectionInfo, sql: str, escalate_warnings: bool
    ) -> List[Dict[str, Any]]:
        """
        Connect, run sql and return its rows.

        With escalate_warnings, Python warnings and driver-level pyodbc.Warning
        fail the query. Without it both are logged and the run goes on: a warning
        from cursor.execute still returns whatever result set the cursor holds,
        and one from connect leaves no session, so no rows are returned.
        """
        self.ensure_available()
        pyodbc = self._pyodbc
        if escalate_warnings:
            driver_errors = (pyodbc.Error, pyodbc.Warning, Warning)
        else:
            driver_errors = (pyodbc.Error,)
        connection_string = build_connection_string(connection, self.driver, self.application_name)

        with warnings.catch_warnings():
            warnings.simplefilter("error" if escalate_warnings else "ignore")
            try:
                conn = pyodbc.connect(
                    connection_string, timeout=self.login_timeout, autocommit=True
                )
            except driver_errors as e:
                raise QueryExecutionError(driver_message(e)) from e
            except pyodbc.Warning as e:
                logger.warning(f"Driver warning suppressed, statement not run: {driver_message(e)}")
                return []

            try:
                cursor = conn.cursor()
                try:
                    cursor.execute(sql)
                except pyodbc.Warning as e:
                    if escalate_warnings:
                        raise
                    logger.warning(f"Driver warning suppressed: {driver_message(e)}")
                for _, text in getattr(cursor, "messages", None) or []:
                    logger.info(f"Server message: {text}")
                return fetch_rows(cursor)
            except driver_errors as e:
                raise QueryExecutionError(driver_message(e)) from e
            finally:
                conn.close()


# =============================================================================
# Job Runner
# =============================================================================


class JobState(str, Enum):
    START = "Start"
    PARSE_INPUT = "ParseInput"
    VALIDATE_PARAMS = "ValidateParams"
    ENSURE_DEPENDENCY = "EnsureDependency"
    CONNECT = "Connect"
    REWRITE = "Rewrite"
    EXECUTE = "Execute"
    MATERIALIZE = "Materialize"
    EMIT = "Emit"
    TERMINATE = "Terminate"


STATE_ORDER = list(JobState)


class JobRunner:
    """
    Drives one job from raw input to its terminal status.

    States advance strictly in STATE_ORDER. A failure in any state before Emit
    jumps straight to Emit, where a single error message with the failure's code
    is written. Exactly one terminal message is written per run; run() returns
    the process exit status (0 after success, 1 after error).
    """

    def __init__(
        self,
        writer: ProtocolWriter,
        executor: Optional[QueryExecutor] = None,
        settings: Optional[JobSettings] = None,
        diagnostics: Optional[TextIO] = None,
    ):
        self.writer = writer
        self.executor = executor
        self.settings = settings
        self.diagnostics = diagnostics if diagnostics is not None else sys.stderr
        self.state = JobState.START
        configure_logging(self.diagnostics)

    def run(self, raw: str) -> int:
        try:
            self._run_stages(raw)
        except JobError as e:
            return self._fail(e.code, e.description)
        except Exception as e:
            logger.opt(exception=e).debug("Unexpected failure")
            return self._fail(ErrorCode.UNEXPECTED, f"Unexpected error: {type(e).__name__}: {e}")
        return 0

    def _run_stages(self, raw: str) -> None:
        self._advance(JobState.PARSE_INPUT)
        envelope = parse_envelope(raw)
        params = request_params(envelope)
        configure_logging(self.diagnostics, debug=coerce_flag(lookup_param(params, "debug")))
        logger.debug(f"Input: {json.dumps(redact(envelope), default=str)}")

        self._advance(JobState.VALIDATE_PARAMS)
        request = parse_job_request(params)

        self._advance(JobState.ENSURE_DEPENDENCY)
        settings = self.settings or load_settings()
        executor = self.executor or OdbcQueryExecutor.from_settings(settings)
        executor.ensure_available()
        self.writer.progress(0.1)

        self._advance(JobState.CONNECT)
        connection = ConnectionInfo.from_request(request)
        logger.info("Encryption enabled" if connection.encrypt else "Encryption disabled")
        if connection.trust_server_certificate:
            logger.info("Server certificate trusted; certificate warnings are suppressed")
        else:
            logger.info("Server certificate not trusted; warnings fail the job")
        self.writer.progress(0.2)

        self._advance(JobState.REWRITE)
        if request.max_rows:
            if ROW_LIMIT_PATTERN.match(request.query):
                logger.info(f"Row limit applied: TOP {request.max_rows}")
            else:
                logger.info("Row limit not applied: statement does not start with SELECT")
            request = request.model_copy(
                update={"query": apply_row_limit(request.query, request.max_rows)}
            )
        logger.debug(f"SQL: {request.query}")
        self.writer.progress(0.5)

        self._advance(JobState.EXECUTE)
        started = time.perf_counter()
        rows = executor.execute(
            connection, request.query, escalate_warnings=not request.trust_certificate
        )
        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(f"{len(rows)} rows returned in {duration_ms} ms")
        self.writer.progress(0.9)

        self._advance(JobState.MATERIALIZE)
        try:
            result = materialize(
                rows,
                request.export_format,
                settings.output_dir or os.getcwd(),
                server=request.server,
                database=request.database,
                inline_limit=settings.inline_csv_limit,
            )
        except OSError as e:
            raise QueryExecutionError(f"Failed to write query results: {e}") from e
        result.payload["durationMs"] = duration_ms

        self._advance(JobState.EMIT)
        if result.artifact is not None:
            logger.info(f"Results written to {result.artifact.file_path}")
            self.writer.files([result.artifact.file_path])
        self.writer.data(result.payload)
        self.writer.progress(1.0)
        self.writer.success(f"{len(rows)} rows returned")
        self._advance(JobState.TERMINATE)

    def _fail(self, code: int, description: str) -> int:
        logger.error(f"Job failed with code {int(code)}: {description}")
        if self.state is not JobState.EMIT:
            self._advance(JobState.EMIT)
        if not self.writer.terminated:
            self.writer.error(code, description)
        self._advance(JobState.TERMINATE)
        return 1

    def _advance(self, state: JobState) -> None:
        in_sequence = STATE_ORDER.index(state) == STATE_ORDER.index(self.state) + 1
        bail_out = state is JobState.EMIT and self.state is not JobState.TERMINATE
        if not (in_sequence or bail_out):
            raise RuntimeError(f"Illegal transition {self.state.value} -> {state.value}")
        logger.debug(f"{self.state.value} -> {state.value}")
        self.state = state


def main() -> int:
    raw = sys.stdin.read()
    runner = JobRunner(ProtocolWriter(sys.stdout))
    return runner.run(raw)


if __name__ == "__main__":
    sys.exit(main())
