"""
Go test executor.
"""

import os
import re
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .base import TestExecutor
from ..models import TestResults, TestTarget
from ..utils.logging import get_logger
from ..utils.process import CommandResult, run_command


logger = get_logger(__name__)

_RESULT_LINE = re.compile(r"^\s*--- (PASS|FAIL|SKIP):")
_SUMMARY_FIELD = re.compile(r"\b(PASS|FAIL|SKIP):\s*(\d+)")


class GoOptions(BaseModel):
    """Options recognized by the go executor."""

    packages: List[str] = Field(default_factory=list)
    package: Optional[str] = None
    verbose: bool = False
    timeout: Optional[str] = Field(default=None, description="go test -timeout, e.g. 30m")
    count: Optional[int] = Field(default=None, ge=1)
    race: bool = False
    coverage: bool = False
    coverage_profile: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    run: Optional[str] = None
    skip: Optional[str] = None
    short: bool = False
    bench: Optional[str] = None
    bench_time: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    working_dir: Optional[str] = None

    @field_validator('tags', mode='before')
    @classmethod
    def split_tags(cls, v):
        if isinstance(v, str):
            return [tag.strip() for tag in v.split(',') if tag.strip()]
        return v

    @model_validator(mode='after')
    def require_packages(self):
        if self.package is not None and not self.package.strip():
            raise ValueError("package cannot be empty")
        if not self.packages and not self.package:
            raise ValueError("either 'packages' or 'package' must be specified")
        if any(not pkg.strip() for pkg in self.packages):
            raise ValueError("packages cannot contain empty entries")
        return self

    def package_list(self) -> List[str]:
        return list(self.packages) or [self.package]


def parse_go_output(output: str, returncode: int) -> TestResults:
    """Count go test outcomes.

    A ``PASS: n, FAIL: n, SKIP: n`` summary line wins over counted
    ``--- PASS/FAIL/SKIP:`` lines. A failing process with nothing parseable
    counts every ``=== RUN`` as a failure, or a single failure if none ran.
    """
    counts = {"PASS": 0, "FAIL": 0, "SKIP": 0}
    summary: Optional[Dict[str, int]] = None

    for line in output.splitlines():
        match = _RESULT_LINE.match(line)
        if match:
            counts[match.group(1)] += 1
            continue
        fields = _SUMMARY_FIELD.findall(line)
        if fields and not line.lstrip().startswith("---"):
            summary = {key: 0 for key in counts}
            summary.update({key: int(value) for key, value in fields})

    if summary is not None:
        counts = summary

    passed, failed, skipped = counts["PASS"], counts["FAIL"], counts["SKIP"]
    if returncode != 0 and passed + failed + skipped == 0:
        failed = output.count("=== RUN") or 1

    return TestResults(total=passed + failed + skipped, passed=passed, failed=failed, skipped=skipped)


class GoTestExecutor(TestExecutor):
    """Runs ``go test`` against one cluster."""

    type = "go"
    options_model = GoOptions

    def build_args(self, options: GoOptions) -> List[str]:
        args = [self.executor_config.go_binary, "test"]
        if options.verbose:
            args.append("-v")
        if options.timeout:
            args.extend(["-timeout", options.timeout])
        if options.count is not None:
            args.extend(["-count", str(options.count)])
        if options.race:
            args.append("-race")
        if options.coverage:
            args.append("-cover")
            if options.coverage_profile:
                args.extend(["-coverprofile", options.coverage_profile])
        if options.tags:
            args.extend(["-tags", ",".join(options.tags)])
        if options.run:
            args.extend(["-run", options.run])
        if options.skip:
            args.extend(["-skip", options.skip])
        if options.short:
            args.append("-short")
        if options.bench:
            args.extend(["-bench", options.bench])
            if options.bench_time:
                args.extend(["-benchtime", options.bench_time])
        args.extend(options.package_list())
        return args

    def build_env(self, target: TestTarget, options: GoOptions) -> Dict[str, str]:
        env = dict(options.env)
        env.update(target.environment())
        return env

    async def run(self, target: TestTarget, options: GoOptions) -> CommandResult:
        args = self.build_args(options)
        logger.info(f"Running go tests on {target.cluster}: {' '.join(args)}")
        return await run_command(
            args,
            timeout=self.executor_config.run_timeout,
            check=False,
            env=self.build_env(target, options),
            cwd=options.working_dir
        )

    def parse_output(self, result: CommandResult, options: GoOptions) -> TestResults:
        results = parse_go_output(result.output, result.returncode)
        if options.coverage and options.coverage_profile:
            path = options.coverage_profile
            if options.working_dir and not os.path.isabs(path):
                path = os.path.join(options.working_dir, path)
            results.artifacts[os.path.basename(path)] = path
        return results
