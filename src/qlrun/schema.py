from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from qlrun.json_types import JSONObject
from qlrun.methods import ResultType, Severity


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> JSONObject:
        return self.model_dump(by_alias=True, exclude_none=True)


class CompilationOptions(WireModel):
    compute_no_location_urls: bool = True
    fail_on_warnings: bool = False
    fast_compilation: bool = False
    include_dil_in_qlo: bool = True
    local_checking: bool = False
    no_compute_get_url: bool = False
    no_compute_to_string: bool = False
    compute_default_strings: bool = True


class ExtraOptions(WireModel):
    timeout_secs: int = 0


class QueryToCheck(WireModel):
    library_path: List[str] = []
    dbscheme_path: str
    query_path: str


class QuickEvalPosition(WireModel):
    file_name: str
    line: int
    column: int
    end_line: int
    end_column: int


class QuickEvalTarget(WireModel):
    quick_eval_pos: QuickEvalPosition


class CompileTarget(WireModel):
    query: Optional[Dict[str, str]] = None
    quick_eval: Optional[QuickEvalTarget] = None

    @classmethod
    def whole_query(cls) -> CompileTarget:
        return cls(query={"xx": ""})

    @classmethod
    def region(cls, position: QuickEvalPosition) -> CompileTarget:
        return cls(quick_eval=QuickEvalTarget(quick_eval_pos=position))


class CompileQueryBody(WireModel):
    compilation_options: CompilationOptions = CompilationOptions()
    extra_options: ExtraOptions = ExtraOptions()
    query_to_check: QueryToCheck
    result_path: str
    target: CompileTarget


class CompileQueryParams(WireModel):
    body: CompileQueryBody
    progress_id: int


class DatabaseEntry(WireModel):
    db_dir: str
    working_set: str = "default"


class QueryToRun(WireModel):
    results_path: str
    qlo: str
    allow_unknown_templates: bool = True
    template_values: Optional[Dict[str, Any]] = None
    id: int = 0
    timeout_secs: int = 0


class RunQueriesBody(WireModel):
    db: DatabaseEntry
    evaluate_id: int
    queries: List[QueryToRun]
    stop_on_error: bool = False
    use_sequence_hint: bool = False


class RunQueriesParams(WireModel):
    body: RunQueriesBody
    progress_id: int


class DatabasesBody(WireModel):
    databases: List[DatabaseEntry]


class DatabasesParams(WireModel):
    body: DatabasesBody
    progress_id: int


class CompilationMessage(WireModel):
    message: str = ""
    severity: Optional[int] = None
    position: Optional[Dict[str, Any]] = None

    @property
    def level(self) -> Severity:
        return Severity.from_code(self.severity)


class CompileQueryResult(WireModel):
    messages: List[CompilationMessage] = []

    def errors(self) -> List[CompilationMessage]:
        return [msg for msg in self.messages if msg.level is Severity.ERROR]


class RegisteredDatabases(WireModel):
    registered_databases: List[DatabaseEntry] = []


class ProgressParams(WireModel):
    message: str = ""
    step: Optional[int] = None
    max_step: Optional[int] = None


class QueryCompletedParams(WireModel):
    result_type: int
    message: Optional[str] = None
    evaluation_time: Optional[float] = None

    @property
    def outcome(self) -> ResultType:
        try:
            return ResultType(self.result_type)
        except ValueError:
            return ResultType.OTHER_ERROR


def string_template_values(bindings: Mapping[str, str]) -> Dict[str, Any] | None:
    """Template bindings in the single-string-tuple shape the engine accepts."""
    if not bindings:
        return None
    return {
        name: {"values": {"tuples": [[{"stringValue": value}]]}}
        for name, value in bindings.items()
    }
