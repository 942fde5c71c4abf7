"""Line-oriented prompts for the interactive setup flow."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, TextIO


@dataclass
class PromptOptions:
    """One prompt.

    ``default`` is returned for an empty answer and shown in brackets unless
    ``secret`` is set. ``validate`` raises ValueError to reject an answer; the
    prompt then asks again until the input runs out.
    """

    question: str
    default: str = ""
    validate: Callable[[str], None] | None = None
    secret: bool = False


def ask_line(stream: TextIO, out: TextIO, prompt: PromptOptions) -> str:
    """Print the prompt, read one line and return it, or the default when empty.

    End of input with no data counts as accepting the default.
    """
    while True:
        if prompt.default and not prompt.secret:
            out.write(f"{prompt.question} [{prompt.default}]: ")
        else:
            out.write(f"{prompt.question}: ")

        raw = stream.readline()
        at_eof = not raw.endswith("\n")
        line = raw.rstrip("\r\n") or prompt.default
        if prompt.validate is not None:
            try:
                prompt.validate(line)
            except ValueError as exc:
                out.write(f"  {exc}\n")
                if at_eof:
                    raise
                continue
        return line


def ask_yes_no(stream: TextIO, out: TextIO, question: str, default_yes: bool = False) -> bool:
    """Ask a yes/no question; anything but y or yes counts as no."""
    hint = "Y/n" if default_yes else "y/N"
    out.write(f"{question} [{hint}]: ")
    answer = stream.readline().strip().lower()
    if not answer:
        return default_yes
    return answer in ("y", "yes")