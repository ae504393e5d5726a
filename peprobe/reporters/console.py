from __future__ import annotations

from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table

from peprobe.model import PeInfo

console = Console()


def render_console(info: PeInfo, path: Path, *, out: Optional[Console] = None) -> None:
    c = out or console
    t = Table(title="peprobe: PE Probe (Static, No Execution)")
    t.add_column("Field")
    t.add_column("Value", overflow="fold")
    t.add_row("input", str(path))
    t.add_row("arch", info.arch or "unknown")
    t.add_row("requires_elevation", "yes" if info.requires_elevation() else "no")
    if info.assembly_info is not None:
        t.add_row("execution_level", info.assembly_info.requested_execution_level)
    t.add_row("imports", ", ".join(info.imports))
    for sym in info.imported_symbols:
        t.add_row("symbol", sym)
    for key in sorted(info.version_properties):
        t.add_row(key, info.version_properties[key])
    for da in info.dependent_assemblies:
        t.add_row(
            "dependent_assembly",
            f"{da.name} lang={da.language} arch={da.processor_architecture} token={da.public_key_token}",
        )
    c.print(t)
