"""Claude CLI adapter: runs the edit agent in a site directory and streams its events."""

import json
import logging
import os
import shutil
import subprocess
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

from upserver.core.supervisor import OutputTail

logger = logging.getLogger(__name__)

CLAUDE_EXECUTABLE = "claude"
ALLOWED_TOOLS = ("Read", "Edit", "Write", "Glob", "Grep")
EDIT_TOOLS = ("Edit", "Write", "MultiEdit")

TROUBLE = "I'm having trouble processing your request right now."
TRY_AGAIN = " Please try again or contact support if the issue persists."
INCOMPLETE_NOTE = "\n\nNote: The task encountered some issues and may need review."
NO_RESPONSE = "Request processed, but no response was generated."

SYSTEM_PROMPT = """You are helping a small business owner update their website through an AI assistant called UpServer.

CUSTOMER'S SITE: {site_folder}
SITE PATH: {site_path}

YOUR ROLE:
- Help the customer make changes to their website
- Use the Read, Edit, and Glob tools to actually modify their files
- Be helpful, clear, and explain what changes you're making
- Focus on simple, safe content updates (text, images, styling)

UPSERVER PLATFORM GUIDANCE:
- The customer previews changes with the "Start Server" and "Staging Site" buttons in the header bar.
- To publish changes to their live site they use the "Publish to Live Site" button on their Dashboard.
- After changing files, remind them to check the staging site preview.
- Do NOT tell them to run terminal commands or visit localhost URLs.

SAFETY GUIDELINES:
- If the request requires new functionality, database changes, or complex coding, respond: "This is a bigger change that needs developer involvement. I've flagged this for review and they'll be in touch."
- If you're uncertain about the request, say so and flag for review
- Never delete important files or make destructive changes without explicit confirmation"""


def agent_available(executable: str = CLAUDE_EXECUTABLE) -> bool:
    """True if the agent CLI is on PATH."""
    return shutil.which(executable) is not None


@dataclass
class AgentEvent:
    kind: str  # init | text | file_edit | result | error
    text: str | None = None
    path: str | None = None
    session_id: str | None = None
    subtype: str | None = None
    cost_usd: float | None = None
    duration_ms: int | None = None


def parse_stream_line(line: str) -> list[AgentEvent]:
    """Map one ``stream-json`` line to zero or more events. Raises ValueError on non-JSON."""
    line = line.strip()
    if not line:
        return []
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ValueError(f"Unreadable agent output: {line[:200]}") from e
    if not isinstance(data, dict):
        return []

    kind = data.get("type")
    if kind == "system" and data.get("subtype") == "init":
        if data.get("session_id"):
            return [AgentEvent("init", session_id=data["session_id"])]
        return []

    if kind == "assistant":
        events = []
        for block in (data.get("message") or {}).get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                events.append(AgentEvent("text", text=block["text"]))
            elif block.get("type") == "tool_use" and block.get("name") in EDIT_TOOLS:
                path = (block.get("input") or {}).get("file_path")
                if path:
                    events.append(AgentEvent("file_edit", path=path))
        return events

    if kind == "result":
        return [
            AgentEvent(
                "result",
                subtype=data.get("subtype"),
                session_id=data.get("session_id"),
                cost_usd=data.get("total_cost_usd"),
                duration_ms=data.get("duration_ms"),
            )
        ]

    return []


def relative_paths(paths: list[str], site_path: str | Path) -> list[str]:
    """Express file paths relative to the site directory where possible."""
    root = Path(site_path).resolve()
    out = []
    for p in paths:
        candidate = Path(p)
        if not candidate.is_absolute():
            out.append(candidate.as_posix())
            continue
        try:
            out.append(candidate.resolve().relative_to(root).as_posix())
        except ValueError:
            out.append(candidate.as_posix())
    return out


@dataclass
class AgentOutcome:
    """Folds a run's events into what the chat layer stores and triages."""

    session_handle: str | None = None
    texts: list[str] = field(default_factory=list)
    files_touched: list[str] = field(default_factory=list)
    succeeded: bool = False
    errored: bool = False

    def apply(self, event: AgentEvent):
        if event.kind == "init" and event.session_id:
            self.session_handle = event.session_id
        elif event.kind == "text" and event.text:
            self.texts.append(event.text)
        elif event.kind == "file_edit" and event.path:
            if event.path not in self.files_touched:
                self.files_touched.append(event.path)
        elif event.kind == "result":
            if event.subtype == "success":
                self.succeeded = True
            else:
                self.texts.append(INCOMPLETE_NOTE)
        elif event.kind == "error":
            self.errored = True
            if event.text:
                self.texts.append(event.text)

    @property
    def response(self) -> str:
        return "\n\n".join(t for t in self.texts if t) or NO_RESPONSE


def _error_message(detail: str) -> str:
    lowered = detail.lower()
    extra = ""
    if "not found" in lowered and "executable" in lowered:
        extra = " Claude Code executable was not found."
    elif "auth" in lowered:
        extra = (
            " Authentication failed. Please ensure you're logged into Claude Code "
            "or have ANTHROPIC_API_KEY set."
        )
    return TROUBLE + extra + TRY_AGAIN


class ClaudeAgent:
    """Runs ``claude -p`` with stream-json output inside a customer's site."""

    def __init__(
        self,
        model: str = "claude-haiku-4-5-20251001",
        max_turns: int | None = 25,
        executable: str = CLAUDE_EXECUTABLE,
    ):
        self.model = model
        self.max_turns = max_turns
        self.executable = executable

    def build_prompt(
        self,
        site_path: Path,
        message: str,
        session_handle: str | None = None,
        images: list[str] | None = None,
    ) -> str:
        if images:
            listing = "\n".join(f"- {p}" for p in images)
            message = (
                f"{message}\n\nThe customer has uploaded the following images:\n{listing}\n\n"
                "Use these images to replace/update images as requested. "
                "The images are located in the site folder at the paths shown above."
            )
        if session_handle:
            return message
        system = SYSTEM_PROMPT.format(site_folder=site_path.name, site_path=site_path)
        return (
            f"{system}\n\nCUSTOMER REQUEST: {message}\n\n"
            "Please process this request and make the necessary changes to their website files."
        )

    def build_command(self, prompt: str, session_handle: str | None = None) -> list[str]:
        cmd = [
            self.executable, "-p", prompt,
            "--output-format", "stream-json",
            "--verbose",
            "--permission-mode", "acceptEdits",
            "--allowedTools", ",".join(ALLOWED_TOOLS),
        ]
        if self.model:
            cmd += ["--model", self.model]
        if self.max_turns:
            cmd += ["--max-turns", str(self.max_turns)]
        if session_handle:
            cmd += ["--resume", session_handle]
        return cmd

    def stream(
        self,
        site_path: str | Path,
        message: str,
        session_handle: str | None = None,
        images: list[str] | None = None,
    ) -> Iterator[AgentEvent]:
        """Yield events as the agent works. Always ends with ``result`` or ``error``."""
        site = Path(site_path)
        if not site.is_dir():
            logger.error("Agent site directory missing: %s", site)
            yield AgentEvent("error", text=TROUBLE + TRY_AGAIN)
            return

        prompt = self.build_prompt(site, message, session_handle, images)
        cmd = self.build_command(prompt, session_handle)
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(site),
                env=os.environ.copy(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except OSError as e:
            logger.error("Could not start agent: %s", e)
            yield AgentEvent("error", text=_error_message(f"executable not found: {e}"))
            return

        stderr_tail = OutputTail()
        pump = threading.Thread(
            target=_drain, args=(proc.stderr, stderr_tail), name="agent-stderr", daemon=True
        )
        pump.start()

        saw_result = False
        try:
            for line in proc.stdout:
                try:
                    events = parse_stream_line(line)
                except ValueError as e:
                    logger.warning("%s", e)
                    continue
                for event in events:
                    if event.kind == "result":
                        saw_result = True
                        logger.info(
                            "Agent finished: %s (cost $%s, %sms)",
                            event.subtype, event.cost_usd or 0, event.duration_ms or 0,
                        )
                    yield event

            returncode = proc.wait()
            pump.join(timeout=5)
            if not saw_result:
                detail = stderr_tail.read().strip()
                logger.error("Agent exited with code %s without a result: %s", returncode, detail)
                yield AgentEvent("error", text=_error_message(detail))
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            proc.stdout.close()


def _drain(stream, tail: OutputTail):
    try:
        for line in stream:
            tail.write(line)
    finally:
        stream.close()
