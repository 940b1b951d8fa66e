from __future__ import annotations

from typing import Iterable, Iterator, Optional
from pathlib import Path
import json
import os

import typer
from rich.console import Console
import httpx


TRACE_PREFIX = "[TRACE]"
END_MARKER = "[END]"

app = typer.Typer()
console = Console()
trace_console = Console(stderr=True)


def iter_events(lines: Iterable[str]) -> Iterator[str]:
    """Group SSE ``data:`` lines into event payloads (blank line ends an event)."""
    buf: list[str] = []
    for raw_line in lines:
        line = raw_line.rstrip("\r\n")
        if not line:
            if buf:
                yield "\n".join(buf)
                buf = []
            continue
        if line.startswith("data:"):
            data = line[len("data:"):]
            if data.startswith(" "):
                data = data[1:]
            buf.append(data)
    if buf:
        yield "\n".join(buf)


def error_message(body: str) -> str:
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return body or "Unknown error"
    if not isinstance(payload, dict):
        return body
    msg = str(payload.get("error", "Unknown error"))
    if payload.get("details"):
        msg += f" ({payload['details']})"
    return msg


@app.command()
def cli(
    city: str = typer.Argument(..., help="The city for the itinerary."),
    date: str = typer.Argument(..., help="The date for the itinerary (YYYY-MM-DD)."),
    preferences: Optional[list[str]] = typer.Option(
        None, "--prefer", "-p", help="Preferences for the itinerary (e.g., 'museums', 'walkable')."
    ),
    country: Optional[str] = typer.Option(
        None, "--country", help="2-letter country code, enables public-holiday awareness."
    ),
    output_file: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Save Markdown to file."
    ),
) -> None:
    orchestrator_url = os.getenv("ORCHESTRATOR_URL", "http://localhost:8080")
    url = f"{orchestrator_url.rstrip('/')}/api/v1/plan"
    body = {"city": city, "date": date, "preferences": preferences or []}
    if country:
        body["country_code"] = country

    markdown_output = ""
    with console.status("Planning your day..."):
        try:
            with httpx.stream(
                "POST",
                url,
                json=body,
                headers={"Accept": "text/event-stream", "Content-Type": "application/json"},
                timeout=120,
            ) as resp:
                if resp.status_code != 200:
                    resp.read()
                    trace_console.print(error_message(resp.text), style="bold red")
                    raise typer.Exit(code=1)
                for payload in iter_events(resp.iter_lines()):
                    if payload == END_MARKER:
                        break
                    if payload.startswith(TRACE_PREFIX):
                        trace_console.print(payload, style="dim", markup=False)
                        continue
                    console.print(payload, end="", markup=False)
                    markdown_output += payload
        except httpx.HTTPError as e:
            trace_console.print(f"Request failed: {e}", style="bold red")
            raise typer.Exit(code=1)

    if output_file and markdown_output:
        try:
            # Append results to output file (supports multiple runs)
            output_file.parent.mkdir(parents=True, exist_ok=True)
            with output_file.open("a", encoding="utf-8") as f:
                if f.tell() > 0:
                    f.write("\n\n---\n\n")
                f.write(markdown_output)
            console.print(f"\nSaved itinerary to {output_file}", style="green")
        except OSError as e:
            trace_console.print(f"Failed to write file: {e}", style="bold red")


if __name__ == "__main__":
    app()
