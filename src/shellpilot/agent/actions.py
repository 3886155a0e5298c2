"""Tool declarations and the tagged action schema for model responses."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from typing_extensions import TypedDict

NO_RESPONSE_TEXT = "No response generated."

Part = dict[str, Any]


class HistoryEntry(TypedDict):
    role: str
    parts: list[Part]


class RunCommand(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["run_command"] = "run_command"
    command: str = Field(min_length=1)
    reasoning: str = ""


class SendKeys(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["send_keys"] = "send_keys"
    keys: str = Field(min_length=1)
    reasoning: str = ""


class TaskComplete(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["task_complete"] = "task_complete"
    summary: str = ""


class TextReply(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["text"] = "text"
    text: str


class Unrecognized(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["unrecognized"] = "unrecognized"
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


ToolAction = Annotated[Union[RunCommand, SendKeys, TaskComplete], Field(discriminator="kind")]
ModelAction = Union[RunCommand, SendKeys, TaskComplete, TextReply]

_TOOL_ACTION = TypeAdapter(ToolAction)


@dataclass(frozen=True)
class ModelTurn:
    action: ModelAction
    parts: list[Part]
    ignored: Unrecognized | None = None


def parse_function_call(name: str, args: object) -> RunCommand | SendKeys | TaskComplete | Unrecognized:
    payload = dict(args) if isinstance(args, dict) else {}
    try:
        return _TOOL_ACTION.validate_python({**payload, "kind": name})
    except ValidationError:
        return Unrecognized(name=name, args=payload)


def parse_model_parts(parts: object) -> ModelTurn:
    """Pick one action out of a Gemini-style ``parts`` list.

    A recognised function call wins; otherwise the first text part becomes a
    text reply; otherwise a generic no-response reply is manufactured.
    """
    items = [item for item in parts if isinstance(item, dict)] if isinstance(parts, list) else []

    ignored: Unrecognized | None = None
    call = next((item["functionCall"] for item in items if isinstance(item.get("functionCall"), dict)), None)
    if call is not None:
        action = parse_function_call(str(call.get("name", "")), call.get("args"))
        if not isinstance(action, Unrecognized):
            return ModelTurn(action=action, parts=items)
        ignored = action

    text = next((item["text"] for item in items if isinstance(item.get("text"), str) and item["text"]), None)
    if text is not None:
        # An unanswered functionCall part would poison the next request.
        kept = [item for item in items if "functionCall" not in item] if ignored else items
        return ModelTurn(action=TextReply(text=text), parts=kept, ignored=ignored)
    return ModelTurn(
        action=TextReply(text=NO_RESPONSE_TEXT),
        parts=[{"text": NO_RESPONSE_TEXT}],
        ignored=ignored,
    )


def function_call_entry(name: str, args: dict[str, Any]) -> HistoryEntry:
    return {"role": "model", "parts": [{"functionCall": {"name": name, "args": args}}]}


def function_response_entry(name: str, response: dict[str, Any]) -> HistoryEntry:
    return {"role": "user", "parts": [{"functionResponse": {"name": name, "response": response}}]}


def user_entry(text: str) -> HistoryEntry:
    return {"role": "user", "parts": [{"text": text}]}


AGENT_TOOLS: list[dict[str, Any]] = [
    {
        "functionDeclarations": [
            {
                "name": "run_command",
                "description": (
                    "Execute a shell command on the user's terminal. "
                    "Use this to run any Linux/macOS command. The output of the command will be returned to you. "
                    "Run one command at a time. For multi-step tasks, run commands sequentially and inspect "
                    "output between each."
                ),
                "parameters": {
                    "type": "OBJECT",
                    "properties": {
                        "command": {"type": "STRING", "description": "The shell command to execute"},
                        "reasoning": {
                            "type": "STRING",
                            "description": "Brief explanation of why you are running this command",
                        },
                    },
                    "required": ["command", "reasoning"],
                },
            },
            {
                "name": "send_keys",
                "description": (
                    "Send raw keystrokes or text directly to the terminal. "
                    "Use this to interact with interactive programs, respond to prompts (y/n, passwords, etc.), "
                    "send control sequences (Ctrl+C to cancel, Ctrl+D for EOF), or type text into running "
                    "programs. Unlike run_command, this does NOT wait for a command to complete; it sends the "
                    "keystrokes and captures a brief snapshot of what appears. Special key names you can use in "
                    "the keys field: Enter, Ctrl+C, Ctrl+D, Ctrl+Z, Ctrl+L, Tab, Escape, Up, Down, Left, Right, "
                    "Backspace, Delete."
                ),
                "parameters": {
                    "type": "OBJECT",
                    "properties": {
                        "keys": {
                            "type": "STRING",
                            "description": (
                                "The text or keystrokes to send. For regular text, just type it. For special "
                                'keys, use names like "Enter", "Ctrl+C", "Tab". Combine text and special keys by '
                                'separating with a space, e.g. "y Enter" to type y then press Enter.'
                            ),
                        },
                        "reasoning": {
                            "type": "STRING",
                            "description": "Brief explanation of why you are sending these keystrokes",
                        },
                    },
                    "required": ["keys", "reasoning"],
                },
            },
            {
                "name": "task_complete",
                "description": (
                    "Signal that the task is finished. Call this when you have completed the user's request "
                    "or determined it cannot be completed."
                ),
                "parameters": {
                    "type": "OBJECT",
                    "properties": {
                        "summary": {
                            "type": "STRING",
                            "description": "A concise summary of what was accomplished",
                        },
                    },
                    "required": ["summary"],
                },
            },
        ]
    }
]

AGENT_SYSTEM_PROMPT = (
    "You are an expert Linux/macOS system administrator agent with full access to the user's terminal. "
    "When the user asks you to do something, use the run_command tool to execute commands on their terminal. "
    "Inspect the output of each command before deciding the next step. "
    "Break complex tasks into small, sequential steps. "
    "If a command fails, analyze the error and try to fix it. "
    "When the task is complete, call task_complete with a summary. "
    "If the user asks a question that does not require running commands, respond with plain text."
    "\n\nTOOLS:\n"
    "- run_command: Execute a shell command and get its full output. Best for non-interactive commands. "
    "Always prefer this for standard commands.\n"
    "- send_keys: Send raw keystrokes/text to the terminal. Use this when you need to:\n"
    '  * Respond to an interactive prompt (e.g. type "y" and press Enter)\n'
    "  * Send Ctrl+C to cancel a stuck or long-running process\n"
    "  * Send Ctrl+D for EOF\n"
    "  * Interact with a running program that expects input\n"
    "  * Type text into a TUI or interactive application\n"
    "Note: send_keys only captures a brief snapshot of terminal output (~3 seconds), not strict "
    "command-completion output.\n"
    "\n\nCRITICAL RULES:\n"
    "1. Prefer run_command over send_keys for standard commands; send_keys is for interactive situations only. "
    "2. NEVER run interactive commands that wait for user input via run_command (vim, nano, vi, less, more, top, "
    "htop, python, node, ssh, mysql, psql, irb, etc). If you must interact with such programs, prefer "
    "non-interactive alternatives. If absolutely necessary, use send_keys. "
    "3. Always use non-interactive flags: use -y for apt/yum/dnf, use DEBIAN_FRONTEND=noninteractive, "
    "use -f for commands that prompt. "
    "4. For file editing, use echo/printf/cat with heredocs or sed/awk; NEVER use text editors. "
    "5. For writing multi-line files, use: cat > filename << 'EOF'\n...content...\nEOF "
    "6. When running scripts, ensure they are non-interactive (no read commands, no prompts). "
    "7. If a command might produce paged output, pipe through cat (e.g. git log | cat, man cmd | cat). "
    "8. Never run destructive commands (rm -rf /, mkfs, etc.) without the user explicitly confirming. "
    "9. Keep individual commands short and focused. Avoid long command chains. "
    '10. If you need to check if a program is installed, use "which" or "command -v", not the program itself. '
    '11. If a run_command times out or reports "waiting for input", use send_keys with Ctrl+C to cancel it, '
    "then try a different approach."
)
