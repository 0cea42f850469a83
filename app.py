from __future__ import annotations

import asyncio
from contextlib import contextmanager
from pathlib import Path
import sys
from typing import Awaitable, Callable, Iterator, Optional

from textual import events
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.screen import ModalScreen
from textual.widgets import Footer, Header, Input, OptionList, Static, Tree
from textual.widgets.option_list import Option, OptionDoesNotExist
from textual.widgets._tree import TextType, TreeNode
from rich.text import Text

import ai
from graph_io import load_graph, read_text_source, save_graph, to_markdown
from graph_store import GraphStore
from ingest import IngestError
from node_models import GraphNode, Position, QuizQuestion
from rate_limit import RateLimiter
from storage import JsonFileStore, KeyValueStore, data_dir
from vault import SecretVault

CATEGORY_STYLES = {
    "topic": ("📘", "bold blue"),
    "definition": ("💡", "green"),
    "explanation": ("📄", ""),
    "critical-point": ("⚠", "bold red"),
    "example": ("🧪", "yellow"),
}


class GraphTree(Tree[str]):
    """Tree widget whose node data is the graph node id."""

    def process_label(self, label: TextType) -> Text:
        if isinstance(label, str):
            return Text.from_markup(label, justify="left")
        return label


class ModelSelectorScreen(ModalScreen[str | None]):
    """Modal dialog that lets the user pick an OpenRouter model."""

    DEFAULT_CSS = """
    ModelSelectorScreen {
        align: center middle;
    }

    #model-selector-panel {
        min-width: 50;
        max-width: 80;
        background: $panel;
        border: round $secondary;
        padding: 1 2 2 2;
    }

    #model-selector-title {
        content-align: center middle;
        text-style: bold;
        padding-bottom: 1;
    }
    """

    def __init__(self, models: list[str], current_model: str) -> None:
        super().__init__()
        self._models = models
        self._current_model = current_model

    def compose(self) -> ComposeResult:
        with Vertical(id="model-selector-panel"):
            yield Static("Select OpenRouter model", id="model-selector-title")
            yield OptionList(
                *[Option(model, id=model) for model in self._models],
                id="model-selector-list",
            )

    def on_mount(self) -> None:
        option_list = self.query_one("#model-selector-list", OptionList)
        option_list.focus()
        try:
            option_list.highlighted = option_list.get_option_index(self._current_model)
        except OptionDoesNotExist:
            option_list.highlighted = 0 if option_list.option_count else None

    def on_option_list_option_selected(self, event: OptionList.OptionSelected) -> None:
        event.stop()
        self.dismiss(event.option_id or str(event.option.prompt))

    def on_key(self, event: events.Key) -> None:
        if event.key == "escape":
            event.stop()
            self.dismiss(None)


class PromptScreen(ModalScreen[str | None]):
    """Single-line prompt; Enter submits, Escape cancels."""

    DEFAULT_CSS = """
    PromptScreen {
        align: center middle;
        background: transparent;
    }

    #prompt-panel {
        width: 70;
        height: auto;
        background: $panel;
        border: round $secondary;
        padding: 0 1;
    }
    """

    def __init__(self, title: str, initial: str = "", *, placeholder: str = "", password: bool = False) -> None:
        super().__init__()
        self._title = title
        self._initial = initial
        self._placeholder = placeholder
        self._password = password

    def compose(self) -> ComposeResult:
        with Vertical(id="prompt-panel"):
            yield Static(self._title, id="prompt-title")
            yield Input(
                value=self._initial,
                placeholder=self._placeholder,
                password=self._password,
                id="prompt-field",
            )

    def on_mount(self) -> None:
        self.query_one("#prompt-field", Input).focus()

    def on_input_submitted(self, event: Input.Submitted) -> None:
        event.stop()
        self.dismiss(event.value)

    def on_key(self, event: events.Key) -> None:
        if event.key == "escape":
            event.stop()
            self.dismiss(None)


class TextPanelScreen(ModalScreen[None]):
    """Read-only panel for summaries and quiz results."""

    DEFAULT_CSS = """
    TextPanelScreen {
        align: center middle;
    }

    #text-panel {
        width: 80;
        height: auto;
        max-height: 80%;
        background: $panel;
        border: round $secondary;
        padding: 1 2;
    }

    #text-panel-title {
        text-style: bold;
        padding-bottom: 1;
    }
    """

    def __init__(self, title: str, body: str) -> None:
        super().__init__()
        self._title = title
        self._body = body

    def compose(self) -> ComposeResult:
        with Vertical(id="text-panel"):
            yield Static(self._title, id="text-panel-title")
            yield Static(self._body, id="text-panel-body")
            yield Static(Text("Esc / Enter to close", style="dim"))

    def on_key(self, event: events.Key) -> None:
        if event.key in ("escape", "enter", "q"):
            event.stop()
            self.dismiss(None)


class QuizScreen(ModalScreen[int]):
    """Asks each question in turn; dismisses with the number answered correctly."""

    DEFAULT_CSS = """
    QuizScreen {
        align: center middle;
    }

    #quiz-panel {
        width: 80;
        height: auto;
        background: $panel;
        border: round $secondary;
        padding: 1 2;
    }

    #quiz-title {
        text-style: bold;
        padding-bottom: 1;
    }
    """

    def __init__(self, title: str, questions: list[QuizQuestion]) -> None:
        super().__init__()
        self._title = title
        self._questions = questions
        self._index = 0
        self._answers: list[Optional[str]] = [None] * len(questions)

    def compose(self) -> ComposeResult:
        with Vertical(id="quiz-panel"):
            yield Static(f"{self._title} - Quiz", id="quiz-title")
            yield Static("", id="quiz-question")
            yield OptionList(id="quiz-options")
            yield Static("", id="quiz-feedback")

    def on_mount(self) -> None:
        self._show_question()

    @staticmethod
    def _choices(question: QuizQuestion) -> list[str]:
        if question.type == "true-false":
            return ["True", "False"]
        return list(question.options)

    def _show_question(self) -> None:
        question = self._questions[self._index]
        header = f"Question {self._index + 1} of {len(self._questions)}\n\n{question.question}"
        self.query_one("#quiz-question", Static).update(header)
        options = self.query_one("#quiz-options", OptionList)
        options.clear_options()
        options.add_options([Option(choice) for choice in self._choices(question)])
        options.highlighted = 0
        options.focus()

    def score(self) -> int:
        return sum(1 for question, answer in zip(self._questions, self._answers) if question.is_correct(answer))

    def on_option_list_option_selected(self, event: OptionList.OptionSelected) -> None:
        event.stop()
        question = self._questions[self._index]
        answer = str(event.option.prompt)
        self._answers[self._index] = answer
        verdict = "Correct!" if question.is_correct(answer) else f"Incorrect. Answer: {question.correct_answer}"
        if question.explanation:
            verdict = f"{verdict}\n{question.explanation}"
        self.query_one("#quiz-feedback", Static).update(verdict)
        if self._index + 1 < len(self._questions):
            self._index += 1
            self._show_question()
        else:
            self.dismiss(self.score())

    def on_key(self, event: events.Key) -> None:
        if event.key == "escape":
            event.stop()
            self.dismiss(self.score())


class MindGraphApp(App[None]):
    """Textual user interface over the concept graph."""

    TITLE = "mindgraph"

    CSS = """
    #graph-tree {
        width: 1fr;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit", show=False),
        Binding("s", "save", "Save"),
        Binding("o", "open", "Open"),
        Binding("c", "toggle_collapse", "Collapse"),
        Binding("x", "expand_node", "(AI expand)"),
        Binding("g", "generate_from_file", "(AI map)"),
        Binding("z", "summarize", "(AI summary)"),
        Binding("u", "quiz", "(AI quiz)"),
        Binding("e", "edit_node", "(edit)"),
        Binding("a", "add_child", "(add)"),
        Binding("p", "export_outline", "Outline"),
        Binding("n", "new_map", "New", show=False),
        Binding("k", "set_api_key", "API key"),
        Binding("m", "choose_model", "Model"),
        Binding("escape", "stop_generation", "Stop", show=False),
    ]

    def __init__(
        self,
        initial_path: str | Path | None = None,
        *,
        store: Optional[KeyValueStore] = None,
        gateway: Optional[ai.GenerationGateway] = None,
        graph: Optional[GraphStore] = None,
    ) -> None:
        super().__init__()
        self.title = "mindgraph"
        self._tree_widget: Optional[GraphTree] = None
        self.kv_store: KeyValueStore = store if store is not None else JsonFileStore()
        self.vault = SecretVault(
            self.kv_store,
            on_reset=lambda reason: ai.log_connection_event("VAULT_RESET", "vault", reason),
        )
        self.limiter = RateLimiter(self.kv_store)
        self.gateway = gateway or ai.GenerationGateway(self.vault, self.limiter)
        self.graph = graph if graph is not None else GraphStore.sample()
        self.model_choices = list(ai.AVAILABLE_MODELS)
        self.selected_model = ai.get_active_model()
        if self.selected_model not in self.model_choices:
            self.model_choices.append(self.selected_model)
        self._ai_task: Optional[asyncio.Task[None]] = None
        self._has_key = False
        self._active_path: Optional[Path] = None
        self._initial_load_path: Optional[Path] = Path(initial_path).expanduser() if initial_path else None
        ai.reset_prompt_log()
        ai.reset_connection_log()

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        tree = GraphTree("Mind Map", id="graph-tree")
        tree.show_root = False
        tree.auto_expand = False
        self._tree_widget = tree
        yield tree
        yield Footer()

    def _refresh_key_state(self) -> None:
        self._has_key = self.vault.has_secret()

    def on_mount(self) -> None:
        self._refresh_key_state()
        if self._initial_load_path:
            self._load(self._initial_load_path)
        self.rebuild_tree()
        self.show_status()

    def require_tree(self) -> GraphTree:
        if self._tree_widget is None:
            raise RuntimeError("Tree widget not initialised")
        return self._tree_widget

    def _format_node_label(self, node: GraphNode) -> Text:
        icon, style = CATEGORY_STYLES.get(node.category, ("", ""))
        label = Text(f"{icon} " if icon else "")
        label.append(node.label, style=style)
        if node.is_collapsed:
            hidden = len(self.graph.descendants(node.id) - {node.id})
            label.append(f"  ▸ {hidden} hidden", style="dim")
        return label

    def rebuild_tree(self) -> None:
        tree = self.require_tree()
        visible = self.graph.compute_visible()
        by_id = {node.id: node for node in visible.nodes}
        children: dict[str, list[str]] = {}
        has_parent: set[str] = set()
        for edge in visible.edges:
            children.setdefault(edge.source, []).append(edge.target)
            has_parent.add(edge.target)
        roots = [node.id for node in visible.nodes if node.id not in has_parent]

        tree.clear()
        cursor_target: Optional[TreeNode[str]] = None
        rendered: set[str] = set()

        def add(parent: TreeNode[str], node_id: str, ancestors: frozenset[str]) -> None:
            nonlocal cursor_target
            rendered.add(node_id)
            node = by_id[node_id]
            kids = [kid for kid in children.get(node_id, []) if kid not in ancestors]
            if kids or node.details:
                tree_node = parent.add(self._format_node_label(node), data=node_id, expand=True)
            else:
                tree_node = parent.add_leaf(self._format_node_label(node), data=node_id)
            if node.details:
                tree_node.add_leaf(Text(f"  {node.details}", style="dim italic"))
            if node_id == self.graph.selected_id and cursor_target is None:
                cursor_target = tree_node
            for kid in kids:
                add(tree_node, kid, ancestors | {node_id})

        for root_id in roots:
            add(tree.root, root_id, frozenset())
        # Pure cycles have no parentless node.
        for node in visible.nodes:
            if node.id not in rendered:
                add(tree.root, node.id, frozenset())
        tree.root.expand()
        if cursor_target is not None:
            tree.call_after_refresh(tree.move_cursor, cursor_target)
        tree.focus()

    def on_tree_node_highlighted(self, event: Tree.NodeHighlighted[str]) -> None:
        node_id = event.node.data
        if isinstance(node_id, str):
            self.graph.set_selected(node_id)

    def on_tree_node_selected(self, event: Tree.NodeSelected[str]) -> None:
        event.stop()
        if isinstance(event.node.data, str):
            self.graph.set_selected(event.node.data)
            self.action_toggle_collapse()

    def show_status(self, message: str | None = None) -> None:
        visible = self.graph.compute_visible()
        counts = f"{len(visible.nodes)}/{len(self.graph)} nodes visible"
        composed = f"{counts} · {message}" if message else counts
        key_state = "set" if self._has_key else "missing"
        status = f"{composed} | Model: {self.selected_model} | Key: {key_state}"
        if ai.last_log_error():
            status = f"{status} | Log: {ai.last_log_error()}"
        self.sub_title = status

    def handle_ai_error(self, action_label: str, failure: ai.GenerationFailure) -> None:
        """Provide a consistent error experience for AI failures."""
        if failure.reason == "missing-credential":
            self._refresh_key_state()
        self.bell()
        self.show_status(f"{action_label.capitalize()} failed: {failure.message()}")

    @contextmanager
    def _prompt_log_session(self, label: str) -> Iterator[None]:
        ai.start_prompt_session(label)
        try:
            yield
        finally:
            ai.finish_prompt_session()

    def _start_ai_task(self, coro_factory: Callable[[], Awaitable[None]], *, label: str) -> None:
        if self._ai_task and not self._ai_task.done():
            self.bell()
            self.show_status(f"{label} already running.")
            return
        self.show_status(f"{label}…")

        async def run() -> None:
            with self._prompt_log_session(label):
                await coro_factory()

        task: asyncio.Task[None] = asyncio.create_task(run())
        self._ai_task = task

        def _on_done(completed: asyncio.Task[None]) -> None:
            if self._ai_task is completed:
                self._ai_task = None
            if completed.cancelled():
                self.show_status(f"{label} cancelled.")
                return
            exc = completed.exception()
            if exc is not None:
                self.bell()
                self.show_status(f"{label} error: {exc}")

        task.add_done_callback(_on_done)

    def action_stop_generation(self) -> None:
        if self._ai_task and not self._ai_task.done():
            self._ai_task.cancel()

    def action_toggle_collapse(self) -> None:
        selected = self.graph.selected_node()
        if selected is None:
            self.bell()
            self.show_status("No node selected.")
            return
        self.graph.toggle_collapse(selected.id)
        self.rebuild_tree()
        state = "Collapsed" if not selected.is_collapsed else "Expanded"
        self.show_status(f"{state} '{selected.label}'.")

    def action_expand_node(self) -> None:
        parent = self.graph.selected_node()
        if parent is None:
            self.bell()
            self.show_status("No node selected to expand.")
            return

        async def expand() -> None:
            result = await self.gateway.expand_node(parent)
            if result.failure is not None:
                self.handle_ai_error("expand node", result.failure)
                return
            merged = self.graph.merge_expansion(parent.id, result.value)
            current = self.graph.get_node(parent.id)
            if current is not None and current.is_collapsed:
                self.graph.toggle_collapse(parent.id)
            self.rebuild_tree()
            self.show_status(f"Added {len(merged.new_nodes)} nodes under '{parent.label}'.")

        self._start_ai_task(expand, label="Expand node")

    def action_generate_from_file(self) -> None:
        def apply_path(value: str | None) -> None:
            if not value:
                self.show_status("Generation cancelled.")
                return
            try:
                text = read_text_source(Path(value))
            except (OSError, ValueError) as exc:
                self.bell()
                self.show_status(str(exc))
                return

            async def generate() -> None:
                result = await self.gateway.generate_mind_map(text)
                if result.failure is not None:
                    self.handle_ai_error("generate mind map", result.failure)
                    return
                self.graph.set_graph(result.value.nodes, result.value.edges)
                self.graph.set_selected(None)
                self.rebuild_tree()
                self.show_status(f"Mind map generated from {Path(value).name}.")

            self._start_ai_task(generate, label="Generate mind map")

        self.push_screen(
            PromptScreen("Text or Markdown file to map", placeholder="notes.md"),
            apply_path,
        )

    def action_summarize(self) -> None:
        anchor = self.graph.selected_node() or self.graph.root_node()
        if anchor is None:
            self.bell()
            self.show_status("No content available to summarize.")
            return
        branch_ids = {anchor.id} | self.graph.descendants(anchor.id)
        nodes, _ = self.graph.subgraph(branch_ids)

        async def summarize() -> None:
            result = await self.gateway.summarize(nodes, anchor.label)
            if result.failure is not None:
                self.handle_ai_error("summarize", result.failure)
                return
            self.push_screen(TextPanelScreen(f"Summary: {anchor.label}", result.value))
            self.show_status("Summary ready.")

        self._start_ai_task(summarize, label="Summarize")

    def action_quiz(self) -> None:
        if not len(self.graph):
            self.bell()
            self.show_status("Cannot generate quiz from an empty mind map.")
            return
        root = self.graph.root_node()
        title = root.label if root else "Mind Map Quiz"

        async def quiz() -> None:
            result = await self.gateway.generate_quiz(self.graph.nodes, self.graph.valid_edges())
            if result.failure is not None:
                self.handle_ai_error("generate quiz", result.failure)
                return
            questions = result.value

            def report(score: int | None) -> None:
                self.show_status(f"Quiz completed! You scored {score or 0} out of {len(questions)}.")

            self.push_screen(QuizScreen(title, questions), report)

        self._start_ai_task(quiz, label="Generate quiz")

    def action_edit_node(self) -> None:
        selected = self.graph.selected_node()
        if selected is None:
            self.bell()
            self.show_status("No node selected.")
            return

        def apply_label(value: str | None) -> None:
            if value is None or not value.strip():
                self.show_status("Label unchanged.")
                return
            self.graph.update_node(selected.id, label=value.strip())
            self.rebuild_tree()
            self.show_status("Label updated.")

        self.push_screen(PromptScreen("Node label", selected.label), apply_label)

    def action_add_child(self) -> None:
        parent = self.graph.selected_node()
        if parent is None:
            self.bell()
            self.show_status("No node selected.")
            return

        def apply_label(value: str | None) -> None:
            if value is None or not value.strip():
                self.show_status("Nothing added.")
                return
            existing = {node.id for node in self.graph.nodes}
            index = 1
            while f"{parent.id}-n{index}" in existing:
                index += 1
            child = GraphNode(
                f"{parent.id}-n{index}",
                value.strip(),
                position=Position(parent.position.x, parent.position.y + 100),
            )
            self.graph.add_node(child)
            self.graph.connect(parent.id, child.id)
            if parent.is_collapsed:
                self.graph.toggle_collapse(parent.id)
            self.graph.set_selected(child.id)
            self.rebuild_tree()
            self.show_status(f"Added '{child.label}'.")

        self.push_screen(PromptScreen(f"New child of '{parent.label}'"), apply_label)

    def action_set_api_key(self) -> None:
        def apply_key(value: str | None) -> None:
            if value is None:
                self.show_status("API key unchanged.")
                return
            self.vault.store(value.strip())
            self._refresh_key_state()
            self.show_status("API key saved." if value.strip() else "API key removed.")

        self.push_screen(
            PromptScreen("OpenRouter API key (empty removes it)", placeholder="sk-or-...", password=True),
            apply_key,
        )

    def action_choose_model(self) -> None:
        def apply_selection(selection: str | None) -> None:
            if not selection or selection == self.selected_model:
                self.show_status(f"Model unchanged ({self.selected_model}).")
                return
            self.selected_model = selection
            ai.set_active_model(selection)
            self.show_status(f"Model set to {selection}.")

        self.push_screen(ModelSelectorScreen(self.model_choices, self.selected_model), apply_selection)

    def action_new_map(self) -> None:
        self.graph.set_graph([GraphNode("root", "Central Idea", "topic")], [])
        self.graph.set_selected("root")
        self._active_path = None
        self.rebuild_tree()
        self.show_status("Started a new mind map.")

    def _default_path(self) -> Path:
        return self._active_path or Path("mindmap.json")

    def _load(self, path: Path) -> bool:
        try:
            flow = load_graph(path)
        except (OSError, ValueError) as exc:
            self.bell()
            self.show_status(f"Failed to load {path}: {exc}")
            return False
        if isinstance(flow, IngestError):
            self.bell()
            self.show_status(f"Invalid mind map file {path}: {flow.detail}")
            return False
        self.graph.set_graph(flow.nodes, flow.edges)
        self._active_path = path
        self.show_status(f"Loaded {path}")
        return True

    def action_open(self) -> None:
        def apply_path(value: str | None) -> None:
            if not value:
                return
            if self._load(Path(value).expanduser()):
                self.rebuild_tree()

        self.push_screen(PromptScreen("Open mind map (.json)", str(self._default_path())), apply_path)

    def action_save(self) -> None:
        try:
            path = save_graph(self._default_path(), self.graph.nodes, self.graph.edges)
        except (OSError, ValueError) as exc:
            self.bell()
            self.show_status(str(exc))
            return
        self._active_path = path
        self.show_status(f"Saved to {path}")

    def action_export_outline(self) -> None:
        target = self._default_path().with_suffix(".md")
        try:
            target.write_text(to_markdown(self.graph.nodes, self.graph.edges), encoding="utf-8")
        except (OSError, ValueError) as exc:
            self.bell()
            self.show_status(str(exc))
            return
        self.show_status(f"Outline written to {target}")


def main() -> None:
    ai.configure_log_dir(data_dir())
    initial_path = sys.argv[1] if len(sys.argv) > 1 else None
    MindGraphApp(initial_path).run()


if __name__ == "__main__":
    main()
