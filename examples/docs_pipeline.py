"""
Docs Pipeline Example - Build, Publish, Deploy
================================================

Runs ``examples/pages.yaml`` end to end without a toolchain: the cargo
commands are answered by a ScriptedCommandRunner, which writes the files
``cargo doc`` would have produced.

Two pushes land on ``main`` back to back. Both runs build in parallel; their
deploy jobs share the ``pages`` concurrency group, so the second deployment
only starts once the first one finished.

Usage:
    python examples/docs_pipeline.py
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from pipewright import Pipewright
from pipewright.core.enums import EventKind
from pipewright.core.models import Event
from pipewright.integrations.commands import ScriptedCommandRunner
from pipewright.integrations.hosting import InMemoryHostingTarget


PIPELINE = Path(__file__).parent / "pages.yaml"


async def main() -> None:
    """Run two pushes through the docs pipeline and print the outcome."""
    runner = ScriptedCommandRunner()
    runner.script("cargo test", stdout="test result: ok. 12 passed")
    runner.script(
        "cargo doc",
        delay=0.1,
        writes={
            "target/doc/calcu-rs/index.html": "<h1>calcu-rs</h1>",
            "target/doc/index.html": "<meta http-equiv='refresh'>",
        },
    )
    hosting = InMemoryHostingTarget(base_url="https://calcu-rs.example.test", delay=0.2)

    async with Pipewright(runner=runner, hosting=hosting) as pw:
        pipeline = pw.load_pipeline(PIPELINE)
        await pw.register_environment("github-pages", deployment_branches=["main"])

        first, second = await asyncio.gather(
            pw.handle_event(pipeline, Event(kind=EventKind.PUSH, ref="main", actor="alice")),
            pw.handle_event(pipeline, Event(kind=EventKind.PUSH, ref="main", actor="bob")),
        )
        ignored = await pw.handle_event(
            pipeline, Event(kind=EventKind.PUSH, ref="feature/x", actor="carol")
        )

        print("Docs Pipeline")
        print("-" * 40)
        for state in (first, second):
            print(f"Run      : {state.run_id}")
            print(f"Status   : {state.status.value}")
            for name, job in sorted(state.jobs.items()):
                print(f"  {name:<8}: {job.status.value}")
        print(f"feature/x push admitted: {ignored is not None}")

        environment = await pw.get_environment("github-pages")
        print(f"Live URL : {environment.last_deployed_url}")
        print(f"Deployed : {[d['run_id'] for d in environment.history]}")


if __name__ == "__main__":
    asyncio.run(main())
