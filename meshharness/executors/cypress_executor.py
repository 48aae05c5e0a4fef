"""
Cypress test executor.
"""

import os
import re
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .base import TestExecutor
from ..models import TestResults, TestTarget
from ..utils.logging import get_logger
from ..utils.process import CommandResult, run_command


logger = get_logger(__name__)

_COUNT_FIELD = re.compile(r"\b(Tests|Passing|Passed|Failing|Failed|Pending|Skipped):\s*(\d+)")
_ARTIFACT_PATH = re.compile(r"(\S+\.(?:png|mp4))")

_FIELD_TARGET = {
    "Tests": "total",
    "Passing": "passed",
    "Passed": "passed",
    "Failing": "failed",
    "Failed": "failed",
    "Pending": "skipped",
    "Skipped": "skipped",
}


class CypressOptions(BaseModel):
    """Options recognized by the cypress executor."""

    base_url: str = Field(..., min_length=1, description="Application URL under test")
    spec_pattern: str = Field(..., min_length=1, description="Spec files to run")
    browser: Optional[str] = None
    headed: bool = False
    record: bool = False
    record_key: Optional[str] = None
    default_command_timeout: Optional[int] = Field(default=None, gt=0)
    request_timeout: Optional[int] = Field(default=None, gt=0)
    env: Dict[str, str] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)
    reporter: Optional[str] = None
    reporter_options: Optional[str] = None
    working_dir: Optional[str] = None

    @field_validator('tags', mode='before')
    @classmethod
    def split_tags(cls, v):
        if isinstance(v, str):
            return [tag.strip() for tag in v.split(',') if tag.strip()]
        return v


def parse_cypress_output(output: str, returncode: int) -> TestResults:
    """Sum the run summary counts and collect screenshot and video paths."""
    counts = {"total": 0, "passed": 0, "failed": 0, "skipped": 0}
    saw_total = False
    artifacts: Dict[str, str] = {}

    for line in output.splitlines():
        for key, value in _COUNT_FIELD.findall(line):
            counts[_FIELD_TARGET[key]] += int(value)
            saw_total = saw_total or key == "Tests"
        for path in _ARTIFACT_PATH.findall(line):
            path = path.strip("[]()")
            artifacts[os.path.basename(path)] = path

    if returncode != 0 and not (counts["passed"] or counts["failed"] or counts["skipped"]):
        counts["failed"] = 1

    outcomes = counts["passed"] + counts["failed"] + counts["skipped"]
    total = max(counts["total"], outcomes) if saw_total else outcomes
    return TestResults(
        total=total,
        passed=counts["passed"],
        failed=counts["failed"],
        skipped=counts["skipped"],
        artifacts=artifacts
    )


class CypressTestExecutor(TestExecutor):
    """Runs ``npx cypress run`` against one cluster."""

    type = "cypress"
    options_model = CypressOptions

    def build_args(self, options: CypressOptions) -> List[str]:
        args = [self.executor_config.npx_binary, "cypress", "run", "--spec", options.spec_pattern]
        if options.browser:
            args.extend(["--browser", options.browser])
        args.append("--headed" if options.headed else "--headless")
        if options.record:
            args.append("--record")
            if options.record_key:
                args.extend(["--key", options.record_key])

        config = [f"baseUrl={options.base_url}"]
        if options.default_command_timeout:
            config.append(f"defaultCommandTimeout={options.default_command_timeout}")
        if options.request_timeout:
            config.append(f"requestTimeout={options.request_timeout}")
        args.extend(["--config", ",".join(config)])

        env = [f"{key}={value}" for key, value in sorted(options.env.items())]
        if options.tags:
            env.append(f"grepTags={' '.join(options.tags)}")
        if env:
            args.extend(["--env", ",".join(env)])

        if options.reporter:
            args.extend(["--reporter", options.reporter])
            if options.reporter_options:
                args.extend(["--reporter-options", options.reporter_options])
        return args

    def build_env(self, target: TestTarget, options: CypressOptions) -> Dict[str, str]:
        env = {f"CYPRESS_{key.upper()}": value for key, value in options.env.items()}
        env["CYPRESS_BASE_URL"] = options.base_url
        env.update(target.environment())
        return env

    async def run(self, target: TestTarget, options: CypressOptions) -> CommandResult:
        args = self.build_args(options)
        logger.info(f"Running cypress on {target.cluster}: {' '.join(args)}")
        return await run_command(
            args,
            timeout=self.executor_config.run_timeout,
            check=False,
            env=self.build_env(target, options),
            cwd=options.working_dir
        )

    def parse_output(self, result: CommandResult, options: CypressOptions) -> TestResults:
        return parse_cypress_output(result.output, result.returncode)
