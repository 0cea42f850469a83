import asyncio
import json
import os
import re
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, DefaultDict, Generic, Iterable, Literal, Optional, TypeVar, Union
from urllib import error, request

from ingest import (
    IngestError,
    extract_json,
    validate_expansion,
    validate_mind_map_flow,
    validate_quiz,
    validate_summary,
)
from node_models import Expansion, GraphEdge, GraphNode, MindMapFlow, QuizQuestion
from rate_limit import RateLimiter
from storage import data_dir
from vault import SecretVault

OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"
API_KEY_ENV = "OPENROUTER_API_KEY"
MODEL_ENV = "OPENROUTER_MODEL"
OFFLINE_MODEL = "No AI (offline dummy output)"
_NETWORK_MODELS = [
    "google/gemini-2.0-flash-exp:free",
    "google/gemma-3-27b-it:free",
    "meta-llama/llama-3.3-70b-instruct:free",
    "mistralai/mistral-small-3.2-24b-instruct:free",
    "deepseek/deepseek-r1-0528-qwen3-8b:free",
    "qwen/qwen3-14b:free",
    "openai/gpt-oss-20b:free",
    "z-ai/glm-4.5-air:free",
]
AVAILABLE_MODELS = [OFFLINE_MODEL, *_NETWORK_MODELS]
DEFAULT_MODEL = _NETWORK_MODELS[0]
MAX_TEXT_LENGTH = 1_000_000
REQUEST_TIMEOUT_SECONDS = 30

OPERATION_GENERATE = "ai_generate"
OPERATION_EXPAND = "ai_expand"
OPERATION_QUIZ = "ai_quiz"
OPERATION_SUMMARIZE = "ai_summarize"

_SCRIPT_PATTERN = re.compile(r"<script\b[^>]*>[\s\S]*?</script>", re.IGNORECASE)

_log_dir: Optional[Path] = None
_prompt_log_lock = threading.Lock()
_connection_log_lock = threading.Lock()
_force_new_prompt_task = True
_current_task_prompt_count = 0
_next_task_label: Optional[str] = None
_last_log_error: Optional[str] = None
_dummy_generation = 0
_dummy_counters: DefaultDict[tuple[str, int], int] = defaultdict(int)


def configure_log_dir(directory: Optional[Path]) -> None:
    global _log_dir, _last_log_error
    _last_log_error = None
    _log_dir = Path(directory) if directory else None


def _prompt_log_path() -> Path:
    return (_log_dir or data_dir()) / "prompt.log"


def _connection_log_path() -> Path:
    return (_log_dir or data_dir()) / "connection.log"


def _reset_prompt_state_locked() -> None:
    global _force_new_prompt_task, _current_task_prompt_count, _next_task_label
    _force_new_prompt_task = True
    _current_task_prompt_count = 0
    _next_task_label = None


def reset_prompt_log() -> None:
    with _prompt_log_lock:
        _reset_prompt_state_locked()
        try:
            path = _prompt_log_path()
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("", encoding="utf-8")
        except OSError as exc:
            _record_log_error(exc)


def reset_connection_log() -> None:
    with _connection_log_lock:
        try:
            path = _connection_log_path()
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("", encoding="utf-8")
        except OSError as exc:
            _record_log_error(exc)


def start_prompt_session(label: str | None = None) -> None:
    global _force_new_prompt_task, _current_task_prompt_count, _next_task_label
    with _prompt_log_lock:
        _force_new_prompt_task = True
        _current_task_prompt_count = 0
        _next_task_label = label


def finish_prompt_session() -> None:
    with _prompt_log_lock:
        _reset_prompt_state_locked()


def _ensure_prompt_header_locked(path: Path) -> None:
    global _force_new_prompt_task, _current_task_prompt_count, _next_task_label
    if not _force_new_prompt_task:
        return
    size = path.stat().st_size if path.exists() else 0
    with path.open("a", encoding="utf-8") as log:
        if size:
            log.write("=====\n")
        if _next_task_label:
            log.write(f"Task: {_next_task_label}\n")
    _force_new_prompt_task = False
    _next_task_label = None
    _current_task_prompt_count = 0


def _record_log_error(exc: OSError) -> None:
    global _last_log_error
    _last_log_error = f"{exc.strerror or exc} ({exc.filename})" if exc.filename else str(exc)


def last_log_error() -> Optional[str]:
    """Most recent failure to write prompt.log or connection.log, if any."""
    return _last_log_error


def _log_prompt_exchange(prompt: str, response_raw: str | None, error_text: str | None, model: str) -> None:
    global _current_task_prompt_count
    prompt_text = prompt.strip() or "<empty prompt>"
    response_text = (response_raw or "").strip()
    prompt_timestamp = datetime.now().isoformat(timespec="seconds")
    with _prompt_log_lock:
        try:
            path = _prompt_log_path()
            path.parent.mkdir(parents=True, exist_ok=True)
            _ensure_prompt_header_locked(path)
            with path.open("a", encoding="utf-8") as log:
                if _current_task_prompt_count:
                    log.write("----\n")
                entry_no = _current_task_prompt_count + 1
                log.write(f"mindgraph [{prompt_timestamp}] Prompt {entry_no}:\n")
                log.write("------------------------------------------------------------\n")
                log.write(f"{prompt_text}\n")
                log.write("============================================================\n")
                response_timestamp = datetime.now().isoformat(timespec="seconds")
                log.write(f"{model} [{response_timestamp}] Response {entry_no}:\n")
                log.write("------------------------------------------------------------\n")
                if error_text:
                    log.write(f"<error> {error_text}\n")
                elif response_text:
                    log.write(f"{response_text}\n")
                else:
                    log.write("<empty>\n")
                log.write("============================================================\n")
        except OSError as exc:
            _record_log_error(exc)
            return
        _current_task_prompt_count += 1


def log_connection_event(status: str, model: str, detail: str | None = None) -> None:
    timestamp = datetime.now().isoformat(timespec="seconds")
    message = detail.strip() if detail else ""
    line = f"{timestamp}\t{status.upper()}\t{model}"
    if message:
        line = f"{line}\t{message}"
    with _connection_log_lock:
        try:
            path = _connection_log_path()
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as log:
                log.write(line + "\n")
        except OSError as exc:
            _record_log_error(exc)


def get_active_model() -> str:
    return os.getenv(MODEL_ENV, DEFAULT_MODEL)


def set_active_model(model: str) -> None:
    os.environ[MODEL_ENV] = model
    reset_dummy_counters()


def reset_dummy_counters() -> None:
    global _dummy_generation
    _dummy_generation += 1
    _dummy_counters.clear()


def _dummy_child_title(parent_label: str) -> str:
    key = (parent_label, _dummy_generation)
    _dummy_counters[key] += 1
    return f"{parent_label[:24]} · Detail {_dummy_counters[key]}"


def sanitize_text(text: str) -> str:
    return _SCRIPT_PATTERN.sub("", text)


class TransportError(Exception):
    """The completion endpoint could not produce a response."""


def _post_openrouter(
    model: str, messages: list[dict], api_key: str
) -> tuple[Optional[dict], Optional[str], Optional[str]]:
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        "X-Title": "mindgraph",
    }
    body = {
        "model": model,
        "messages": messages,
    }

    data = json.dumps(body).encode("utf-8")
    http_request = request.Request(
        OPENROUTER_API_URL,
        data=data,
        headers=headers,
        method="POST",
    )
    raw_payload: Optional[str] = None
    try:
        with request.urlopen(http_request, timeout=REQUEST_TIMEOUT_SECONDS) as response:
            status = getattr(response, "status", 200)
            if not 200 <= status < 300:
                return None, f"HTTP {status}", None
            raw_payload = response.read().decode("utf-8")
    except (error.URLError, error.HTTPError, TimeoutError) as exc:
        return None, str(exc), raw_payload

    try:
        parsed = json.loads(raw_payload or "")
    except json.JSONDecodeError as exc:
        return None, f"invalid JSON: {exc}", raw_payload
    return parsed, None, raw_payload


def _extract_text(response: dict) -> Optional[str]:
    try:
        choices = response["choices"]
        if not choices:
            return None
        message = choices[0]["message"]
        return message.get("content")
    except (KeyError, TypeError, IndexError):
        return None


def openrouter_complete(prompt: str, api_key: str) -> str:
    """Send one user prompt to OpenRouter and return the completion text."""
    payload, error_text, _raw = _post_openrouter(
        get_active_model(), [{"role": "user", "content": prompt}], api_key
    )
    if error_text:
        raise TransportError(error_text)
    completion = _extract_text(payload) if payload else None
    if completion is None:
        raise TransportError("response carried no completion text")
    return completion


CompletionFn = Callable[[str, str], Optional[str]]


class CallState(Enum):
    IDLE = "idle"
    RATE_CHECKING = "rate-checking"
    CREDENTIAL_LOADING = "credential-loading"
    CALLING = "calling"
    INGESTING = "ingesting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


FailureReason = Literal[
    "rate-limited",
    "missing-credential",
    "transport-error",
    "malformed-response",
    "schema-invalid",
    "invalid-input",
]

T = TypeVar("T")


@dataclass(frozen=True)
class GenerationFailure:
    reason: FailureReason
    detail: str = ""
    retry_after_seconds: int = 0

    def message(self) -> str:
        if self.reason == "rate-limited":
            return f"Rate limit exceeded. Please try again in {self.retry_after_seconds} seconds."
        if self.reason == "missing-credential":
            return "OpenRouter API key not found. Press 'k' to store one."
        if self.reason == "transport-error":
            return "AI service request failed. Please try again later."
        if self.reason == "malformed-response":
            return "The AI returned an unreadable format. Please try again."
        if self.reason == "schema-invalid":
            return f"The AI's data is incomplete ({self.detail}). Please try again."
        return self.detail or "Invalid input."


@dataclass
class GenerationResult(Generic[T]):
    value: Optional[T] = None
    failure: Optional[GenerationFailure] = None
    states: list[CallState] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def state(self) -> CallState:
        return self.states[-1] if self.states else CallState.IDLE


def _mind_map_prompt(text: str) -> str:
    return (
        "You are a mind map generation expert. Based on the following text, generate a mind map in JSON format. "
        "The JSON must have 'nodes' and 'edges' properties.\n"
        "Each node must have an 'id' (string), 'type': \"custom\", 'position' ({x: number, y: number}) and a 'data' object.\n"
        "The main subject of the text is the single root node: its data type is 'topic', it sits at exactly "
        "{\"x\": 0, \"y\": 0}, and its label names the main subject.\n"
        "Every other node descends from the root in a clear hierarchy: no disconnected nodes, children placed below "
        "their parents, siblings spread horizontally without overlaps.\n"
        "For the 'data' object of each node: 'label' is a concise concept label; 'type' is one of 'topic' (root only), "
        "'definition', 'explanation', 'critical-point', 'example'; 'details' is an optional 1-2 sentence summary.\n"
        "Each edge must have an 'id' (string), 'source' and 'target' (node ids as strings).\n"
        "Output only the JSON object. Do not add commentary or wrap it in markdown backticks.\n\n"
        f"Here is the text:\n---\n{text}\n---\n"
    )


def _expansion_prompt(parent: GraphNode) -> str:
    x, y = parent.position.x, parent.position.y
    return (
        "You are a mind map generation expert. A user wants to expand a node in their existing mind map.\n"
        f"The parent node is:\nLabel: \"{parent.label}\"\nType: \"{parent.category}\"\nID: \"{parent.id}\"\n"
        f"Position: {{ \"x\": {x}, \"y\": {y} }}\n\n"
        "Generate 2-3 new child nodes that elaborate on or break down the parent's concept.\n"
        f"Each child has an 'id' such as \"{parent.id}-child1\", 'type': \"custom\", a 'position' below the parent, "
        "and 'data' with 'label', 'type' (one of 'definition', 'explanation', 'critical-point', 'example'; never 'topic') "
        "and an optional one-sentence 'details'.\n"
        f"Connect the parent to each child with an edge: 'id' like \"e-{parent.id}-child1\", 'source': \"{parent.id}\", "
        "'target' the child id.\n"
        "Return a JSON object with 'nodes' (only the new children, never the parent) and 'edges'. "
        "Output only the JSON object, without commentary or markdown backticks."
    )


def _quiz_material(nodes: list[GraphNode], edges: list[GraphEdge]) -> str:
    lines = ["Nodes:"]
    by_id = {node.id: node for node in nodes}
    for node in nodes:
        lines.append(f"- {node.id}: \"{node.label}\" (type: {node.category})")
    lines.append("")
    lines.append("Connections:")
    for edge in edges:
        source = by_id.get(edge.source)
        target = by_id.get(edge.target)
        if source and target:
            lines.append(f"- \"{source.label}\" -> \"{target.label}\"")
    return "\n".join(lines)


def _quiz_prompt(material: str) -> str:
    return (
        "You are an AI expert at creating educational quizzes. Based on the provided mind map structure and content, "
        "generate a quiz with 3-5 questions.\n\n"
        f"Mind Map Data:\n---\n{material}\n---\n\n"
        "Each question is a JSON object with: \"question\" (string); \"type\" (\"multiple-choice\" or \"true-false\"); "
        "\"options\" (3-4 strings, multiple-choice only); \"correctAnswer\" (one of the options, or \"True\"/\"False\"); "
        "\"explanation\" (optional string).\n"
        "Return only a JSON array of these objects, without commentary or markdown backticks."
    )


def _summary_material(nodes: list[GraphNode]) -> str:
    blocks: list[str] = []
    for node in nodes:
        block = f"Node: \"{node.label}\" (Type: {node.category})"
        details = (node.details or "").strip()
        if details:
            details = re.sub(r"\n\s*\n", "\n", details)
            block = f"{block}\nDetails: {details}"
        blocks.append(block)
    return "\n\n".join(blocks)


def _summary_prompt(material: str, title: str | None) -> str:
    subject = f" (related to \"{title}\")" if title else ""
    return (
        f"You are an expert at summarizing information. Based on the following content from a mind map{subject}, "
        "provide a concise summary of 1-3 paragraphs. Focus on the key concepts and their relationships as presented.\n\n"
        f"Content:\n---\n{material}\n---\nSummary:"
    )


def _offline_mind_map(text: str) -> str:
    first_line = next((line.strip(" #*-\t") for line in text.splitlines() if line.strip()), "Central Idea")
    title = first_line[:40] or "Central Idea"
    nodes: list[dict[str, Any]] = [
        {"id": "root", "type": "custom", "position": {"x": 0, "y": 0}, "data": {"label": title, "type": "topic"}}
    ]
    edges: list[dict[str, Any]] = []
    for index, category in enumerate(("definition", "explanation", "example"), start=1):
        child_id = f"root-child{index}"
        nodes.append(
            {
                "id": child_id,
                "type": "custom",
                "position": {"x": (index - 2) * 250, "y": 150},
                "data": {"label": _dummy_child_title(title), "type": category},
            }
        )
        edges.append({"id": f"e-root-{child_id}", "source": "root", "target": child_id})
    return json.dumps({"nodes": nodes, "edges": edges})


def _offline_expansion(parent: GraphNode) -> str:
    nodes: list[dict[str, Any]] = []
    edges: list[dict[str, Any]] = []
    for index in range(1, 3):
        child_id = f"{parent.id}-child{index}"
        nodes.append(
            {
                "id": child_id,
                "type": "custom",
                "position": {"x": parent.position.x + (index - 1) * 250 - 125, "y": parent.position.y + 150},
                "data": {"label": _dummy_child_title(parent.label), "type": "explanation"},
            }
        )
        edges.append({"id": f"e-{child_id}", "source": parent.id, "target": child_id})
    return json.dumps({"nodes": nodes, "edges": edges})


def _offline_quiz(nodes: list[GraphNode]) -> str:
    labels = [node.label for node in nodes] or ["Central Idea"]
    options = [labels[0], "Something else entirely", "None of these"]
    questions = [
        {
            "question": "Which concept appears in this mind map?",
            "type": "multiple-choice",
            "options": options,
            "correctAnswer": options[0],
        },
        {
            "question": f"\"{labels[0]}\" is part of this mind map.",
            "type": "true-false",
            "correctAnswer": "True",
        },
    ]
    return json.dumps(questions)


def _offline_summary(nodes: list[GraphNode]) -> str:
    labels = [node.label for node in nodes]
    if len(labels) == 1:
        return f"This mind map covers {labels[0]}."
    return f"This mind map covers {', '.join(labels[:-1])} and {labels[-1]}."


class GenerationGateway:
    """Single entry point for every model-backed operation.

    Each call walks rate check, credential lookup, the model call and
    ingestion in order and stops at the first failure. Nothing is retried and
    the graph is never touched here; callers merge successful results.
    """

    def __init__(
        self,
        vault: SecretVault,
        limiter: RateLimiter,
        complete: Optional[CompletionFn] = None,
        *,
        clock: Callable[[], float] = time.time,
        model: Optional[Callable[[], str]] = None,
    ) -> None:
        self.vault = vault
        self.limiter = limiter
        self._complete = complete
        self._clock = clock
        self._model = model or get_active_model

    @property
    def offline(self) -> bool:
        return self._complete is None and self._model() == OFFLINE_MODEL

    def _fail(
        self,
        result: GenerationResult[Any],
        reason: FailureReason,
        detail: str = "",
        retry_after: int = 0,
    ) -> GenerationResult[Any]:
        result.failure = GenerationFailure(reason, detail, retry_after)
        result.states.append(CallState.FAILED)
        log_connection_event(reason, self._model(), detail or None)
        return result

    async def _run(
        self,
        operation: str,
        prompt: str,
        offline_text: Callable[[], str],
        ingest: Callable[[str], Union[T, IngestError]],
    ) -> GenerationResult[T]:
        result: GenerationResult[T] = GenerationResult(states=[CallState.IDLE])

        result.states.append(CallState.RATE_CHECKING)
        decision = self.limiter.check_and_record(operation, self._clock())
        if not decision.allowed:
            return self._fail(
                result,
                "rate-limited",
                f"{operation} limited",
                retry_after=decision.retry_after_seconds,
            )

        result.states.append(CallState.CREDENTIAL_LOADING)
        offline = self.offline
        credential = "" if offline else (self.vault.load() or os.getenv(API_KEY_ENV, ""))
        if not offline and not credential:
            return self._fail(result, "missing-credential")

        result.states.append(CallState.CALLING)
        model = OFFLINE_MODEL if offline else self._model()
        if offline:
            raw_text: Optional[str] = offline_text()
        else:
            complete = self._complete or openrouter_complete
            try:
                raw_text = await asyncio.to_thread(complete, prompt, credential)
            except Exception as exc:
                _log_prompt_exchange(prompt, None, str(exc), model)
                return self._fail(result, "transport-error", str(exc))
        _log_prompt_exchange(prompt, raw_text, None if raw_text is not None else "no response", model)
        if raw_text is None:
            return self._fail(result, "transport-error", "no response")

        result.states.append(CallState.INGESTING)
        outcome = ingest(raw_text)
        if isinstance(outcome, IngestError):
            reason: FailureReason = "schema-invalid" if outcome.kind == "schema-invalid" else "malformed-response"
            return self._fail(result, reason, outcome.detail)

        result.value = outcome
        result.states.append(CallState.SUCCEEDED)
        log_connection_event("SUCCESS", OFFLINE_MODEL if offline else self._model(), operation)
        return result

    def _invalid(self, detail: str) -> GenerationResult[Any]:
        result: GenerationResult[Any] = GenerationResult(states=[CallState.IDLE])
        return self._fail(result, "invalid-input", detail)

    async def generate_mind_map(self, text: str) -> GenerationResult[MindMapFlow]:
        if len(text) > MAX_TEXT_LENGTH:
            return self._invalid(
                f"Input text is too long ({len(text)} characters). Please provide less than {MAX_TEXT_LENGTH} characters."
            )
        cleaned = sanitize_text(text)
        if not cleaned.strip():
            return self._invalid("Input text is empty after sanitization.")

        def ingest(raw: str) -> Union[MindMapFlow, IngestError]:
            payload = extract_json(raw, "object")
            if isinstance(payload, IngestError):
                return payload
            return validate_mind_map_flow(payload)

        return await self._run(
            OPERATION_GENERATE,
            _mind_map_prompt(cleaned),
            lambda: _offline_mind_map(cleaned),
            ingest,
        )

    async def expand_node(self, parent: GraphNode) -> GenerationResult[Expansion]:
        parent_position = parent.position

        def ingest(raw: str) -> Union[Expansion, IngestError]:
            payload = extract_json(raw, "object")
            if isinstance(payload, IngestError):
                return payload
            return validate_expansion(payload, parent_position, parent.id)

        return await self._run(
            OPERATION_EXPAND,
            _expansion_prompt(parent),
            lambda: _offline_expansion(parent),
            ingest,
        )

    async def generate_quiz(
        self, nodes: Iterable[GraphNode], edges: Iterable[GraphEdge]
    ) -> GenerationResult[list[QuizQuestion]]:
        node_list = list(nodes)
        if not node_list:
            return self._invalid("Cannot generate quiz from an empty mind map.")
        material = _quiz_material(node_list, list(edges))
        if len(material) > MAX_TEXT_LENGTH // 2:
            return self._invalid(
                f"Mind map data is too large for quiz generation ({len(material)} characters). Please simplify the mind map."
            )

        def ingest(raw: str) -> Union[list[QuizQuestion], IngestError]:
            payload = extract_json(raw, "array")
            if isinstance(payload, IngestError):
                return payload
            return validate_quiz(payload)

        return await self._run(
            OPERATION_QUIZ,
            _quiz_prompt(material),
            lambda: _offline_quiz(node_list),
            ingest,
        )

    async def summarize(self, nodes: Iterable[GraphNode], title: str | None = None) -> GenerationResult[str]:
        node_list = list(nodes)
        if not node_list:
            return self._invalid("No content available to summarize.")
        material = _summary_material(node_list)
        if len(material) > MAX_TEXT_LENGTH:
            return self._invalid(
                f"Content is too long to summarize ({len(material)} characters). Please select a smaller branch."
            )
        return await self._run(
            OPERATION_SUMMARIZE,
            _summary_prompt(material, title),
            lambda: _offline_summary(node_list),
            validate_summary,
        )
