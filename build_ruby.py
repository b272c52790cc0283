#!/usr/bin/env python3
"""
Checkout, configure, build, install and test a Ruby source tree.

Steps run strictly in order and shell out to git/svn, autoconf, configure and
make. Subprocess output is streamed into a plain-text build log.
"""
import logging
import os
import pprint
import shlex
import shutil
import subprocess
import sys
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import click

DEFAULT_REPOSITORY = "https://svn.ruby-lang.org/repos/ruby/trunk"
DEFAULT_ROOT_DIRECTORY = "~/ruby"
LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'


class BuildError(Exception):
    """Base class for build-ruby errors."""


class ConfigurationError(BuildError, ValueError):
    """Raised before any step runs when the configuration is unusable."""


class RepositoryType(str, Enum):
    GIT = "git"
    SVN = "svn"


class Policy(str, Enum):
    """What a non-zero exit status means for the step that saw it."""
    RAISE = "raise"
    SKIP = "skip"
    IGNORE = "ignore"

    @classmethod
    def parse(cls, value) -> "Policy":
        try:
            return cls(value)
        except ValueError:
            raise ConfigurationError(f"unknown failure policy: {value!r}") from None


class Outcome(Enum):
    SUCCESS = "success"
    FATAL = "fatal"
    SKIPPED = "skipped"


class StepName(str, Enum):
    CHECKOUT = "checkout"
    AUTOCONF = "autoconf"
    CONFIGURE = "configure"
    BUILD_UP = "build_up"
    BUILD_MINIRUBY = "build_miniruby"
    BUILD_RUBY = "build_ruby"
    BUILD_EXTS = "build_exts"
    BUILD_ALL = "build_all"
    BUILD_INSTALL = "build_install"
    CHECK = "check"
    BUILD = "build"
    TEST_BTEST = "test_btest"
    TEST_ALL = "test_all"
    TEST_RUBYSPEC = "test_rubyspec"


_STEP_VALUES = {step.value for step in StepName}

INSTALL_STEPS: Tuple[str, ...] = (
    "checkout",
    "autoconf",
    "configure",
    "build_up",
    "build_miniruby",
    "build_ruby",
    "build_exts",
    "build_all",
    "build_install",
)
DEFAULT_STEPS: Tuple[str, ...] = INSTALL_STEPS + (
    "test_btest",
    "test_all",
    "test_rubyspec",
)


def find_repository_type(repository: str) -> RepositoryType:
    """Guess the repository type from markers in its location."""
    if "git" in repository:
        return RepositoryType.GIT
    if "svn" in repository:
        return RepositoryType.SVN
    raise ConfigurationError(f"unknown repository type: {repository}")


def default_target_name(repository: str) -> str:
    return os.path.basename(repository.rstrip("/"))


def default_logfile(target_name: str) -> str:
    return f"log.build-ruby.{target_name}.{datetime.now():%Y%m%d-%H%M%S}"


@dataclass(frozen=True)
class BuildConfig:
    """Everything a run needs. Paths are derived from root and target only."""
    repository: str
    repository_type: RepositoryType
    target_name: str
    root_directory: str
    logfile: str
    steps: Tuple[str, ...] = DEFAULT_STEPS
    git_branch: Optional[str] = None
    svn_revision: Optional[str] = None
    build_opts: Optional[str] = None
    test_opts: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.repository_type, RepositoryType):
            raise ConfigurationError(
                f"unknown repository type: {self.repository_type!r}")
        unknown = [s for s in self.steps if s not in _STEP_VALUES]
        if unknown:
            raise ConfigurationError(f"unknown steps: {', '.join(unknown)}")

    @classmethod
    def create(
        cls,
        repository: Optional[str] = None,
        target_name: Optional[str] = None,
        *,
        repository_type: Optional[str] = None,
        git_branch: Optional[str] = None,
        svn_revision: Optional[str] = None,
        root_directory: Optional[str] = None,
        build_opts: Optional[str] = None,
        test_opts: Optional[str] = None,
        steps: Optional[Sequence[str]] = None,
        logfile: Optional[str] = None,
    ) -> "BuildConfig":
        """Fill in defaults the way the command line tool expects them."""
        repository = repository or DEFAULT_REPOSITORY
        if repository_type:
            try:
                repo_type = RepositoryType(repository_type)
            except ValueError:
                raise ConfigurationError(
                    f"unknown repository type: {repository_type}") from None
        else:
            repo_type = find_repository_type(repository)
        target_name = target_name or default_target_name(repository)

        nproc = os.cpu_count()
        if nproc:
            if build_opts is None:
                build_opts = f"-j{nproc}"
            if test_opts is None:
                test_opts = f"TESTS='-j{nproc}'"

        root = Path(root_directory or DEFAULT_ROOT_DIRECTORY).expanduser().resolve()
        return cls(
            repository=repository,
            repository_type=repo_type,
            target_name=target_name,
            root_directory=str(root),
            logfile=logfile or default_logfile(target_name),
            steps=tuple(steps) if steps is not None else DEFAULT_STEPS,
            git_branch=git_branch,
            svn_revision=svn_revision,
            build_opts=build_opts,
            test_opts=test_opts,
        )

    @property
    def src_dir(self) -> Path:
        return Path(self.root_directory, "src")

    @property
    def build_dir(self) -> Path:
        return Path(self.root_directory, "build")

    @property
    def install_dir(self) -> Path:
        return Path(self.root_directory, "install")

    @property
    def target_src_dir(self) -> Path:
        return self.src_dir / self.target_name

    @property
    def target_build_dir(self) -> Path:
        return self.build_dir / self.target_name

    @property
    def target_install_dir(self) -> Path:
        return self.install_dir / self.target_name

    def describe(self) -> str:
        data = asdict(self)
        data["repository_type"] = self.repository_type.value
        for name in ("target_src_dir", "target_build_dir", "target_install_dir"):
            data[name] = str(getattr(self, name))
        return pprint.pformat(data, sort_dicts=False)


@dataclass(frozen=True)
class CommandResult:
    command: str
    exit_code: int
    outcome: Outcome

    @property
    def message(self) -> str:
        return f'"{self.command}" exit with {self.exit_code}.'


@dataclass(frozen=True)
class StepResult:
    name: str
    outcome: Outcome = Outcome.SUCCESS
    message: Optional[str] = None
    elapsed: float = 0.0


@dataclass
class RunResult:
    steps: List[StepResult] = field(default_factory=list)
    fatal: Optional[str] = None
    failures: List[str] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def exit_code(self) -> int:
        return 1 if self.fatal or self.failures else 0


@contextmanager
def pushd(path) -> Iterator[Path]:
    """Change into ``path`` for the duration of the block."""
    previous = os.getcwd()
    os.chdir(path)
    try:
        yield Path(path)
    finally:
        os.chdir(previous)


def setup_dirs(config: BuildConfig) -> None:
    """Create the source, target build and install directories if absent."""
    for path in (config.src_dir, config.target_build_dir, config.install_dir):
        if not path.exists():
            logging.debug(f"Creating {path}")
            path.mkdir(parents=True)


def remove(config: BuildConfig) -> None:
    """Delete the source, build and install trees of the target."""
    for path in (config.target_src_dir, config.target_build_dir, config.target_install_dir):
        click.echo(str(path))
        if path.is_symlink() or path.is_file():
            path.unlink()
        elif path.exists():
            shutil.rmtree(path)


class BuildRunner:
    """Runs the configured steps in order and records how each one ended."""

    def __init__(self, config: BuildConfig):
        self.config = config
        self.log = logging.getLogger("build_ruby.build")
        self.log.propagate = False
        self.log.setLevel(logging.INFO)
        build_opts, test_opts = config.build_opts, config.test_opts
        # step -> handler; a handler returns the deciding command, or None for a no-op
        self._handlers: Dict[StepName, Callable[[], Optional[CommandResult]]] = {
            StepName.CHECKOUT: self.checkout,
            StepName.AUTOCONF: self.autoconf,
            StepName.CONFIGURE: self.configure,
            StepName.BUILD_UP: lambda: self._make("up", build_opts, Policy.IGNORE),
            StepName.BUILD_MINIRUBY: lambda: self._make("miniruby", build_opts),
            StepName.BUILD_RUBY: lambda: self._make("ruby", build_opts),
            StepName.BUILD_EXTS: lambda: self._make("exts", build_opts, Policy.IGNORE),
            StepName.BUILD_ALL: lambda: self._make("all", build_opts),
            StepName.BUILD_INSTALL: lambda: self._make("install", build_opts),
            StepName.CHECK: lambda: self._make("check", test_opts),
            StepName.BUILD: self.build,
            StepName.TEST_BTEST: lambda: self._make("btest", test_opts, Policy.SKIP),
            StepName.TEST_ALL: lambda: self._make("test-all", test_opts, Policy.SKIP),
            StepName.TEST_RUBYSPEC: lambda: self._make("test-rubyspec", test_opts, Policy.SKIP),
        }
        self._failures: List[str] = []

    def run_command(self, args: Sequence[str], on_failure=Policy.RAISE) -> CommandResult:
        """
        Run one command, logging its combined output line by line.

        Args:
            args: Program and arguments; not passed through a shell
            on_failure: raise, skip or ignore a non-zero exit status

        Returns:
            CommandResult with the exit code and its classification
        """
        policy = Policy.parse(on_failure)
        cmd_str = shlex.join(args)
        self.log.info(cmd_str)
        logging.debug(f"  Command: {cmd_str} (in {os.getcwd()})")

        try:
            process = subprocess.Popen(
                list(args),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            # same status a shell reports for a command it cannot run
            self.log.info(f"{args[0]}: {e.strerror or e}")
            exit_code = 127
        else:
            with process:
                for line in process.stdout:
                    self.log.info(line.rstrip("\n"))
            exit_code = process.returncode

        if exit_code == 0:
            outcome = Outcome.SUCCESS
        elif policy is Policy.RAISE:
            outcome = Outcome.FATAL
        elif policy is Policy.SKIP:
            outcome = Outcome.SKIPPED
        else:
            outcome = Outcome.SUCCESS

        result = CommandResult(command=cmd_str, exit_code=exit_code, outcome=outcome)
        self.log.info(result.message)

        if outcome is Outcome.SKIPPED:
            self._failures.append(result.message)
        elif outcome is Outcome.SUCCESS and exit_code != 0:
            logging.debug(f"Ignoring failure: {result.message}")
        return result

    def checkout(self) -> Optional[CommandResult]:
        cfg = self.config
        if cfg.target_src_dir.exists():
            logging.info(f"{cfg.target_src_dir} exists, skipping checkout")
            return None

        if cfg.repository_type is RepositoryType.SVN:
            args = ["svn", "checkout"]
            if cfg.svn_revision:
                args += ["-r", cfg.svn_revision]
        else:
            args = ["git", "clone", "--depth", "1"]
            if cfg.git_branch:
                args += ["-b", cfg.git_branch, "--single-branch"]
        args += [cfg.repository, cfg.target_name]

        with pushd(cfg.src_dir):
            return self.run_command(args)

    def autoconf(self) -> Optional[CommandResult]:
        with pushd(self.config.target_src_dir):
            if Path("configure").exists():
                return None
            return self.run_command(["autoconf"])

    def configure(self) -> Optional[CommandResult]:
        cfg = self.config
        with pushd(cfg.target_build_dir):
            if Path("Makefile").exists():
                return None
            return self.run_command([
                str(cfg.target_src_dir / "configure"),
                "--disable-install-doc",
                "--enable-shared",
                f"--prefix={cfg.target_install_dir}",
            ])

    def build(self) -> Optional[CommandResult]:
        """configure, update, build and install in one step."""
        last = None
        for step in (StepName.CONFIGURE, StepName.BUILD_UP,
                     StepName.BUILD_ALL, StepName.BUILD_INSTALL):
            last = self._handlers[step]() or last
            if last is not None and last.outcome is Outcome.FATAL:
                break
        return last

    def _make(self, target: str, opts: Optional[str], on_failure=Policy.RAISE) -> CommandResult:
        args = ["make", target] + shlex.split(opts or "")
        with pushd(self.config.target_build_dir):
            return self.run_command(args, on_failure=on_failure)

    def run(self) -> RunResult:
        """
        Execute the configured steps in order.

        Stops at the first fatal command failure. Skipped failures are collected
        and returned. Any other exception is re-raised after the timing report.
        """
        self._failures = []
        result = RunResult()
        handler = None

        logging.info(f"Executing {len(self.config.steps)} steps...")
        start = time.perf_counter()
        try:
            handler = logging.FileHandler(self.config.logfile, mode="a")
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            self.log.addHandler(handler)
            self.log.info(self.config.describe())
            for name in self.config.steps:
                logging.info(f"Step: {name}")
                step_start = time.perf_counter()
                try:
                    command = self._handlers[StepName(name)]()
                except Exception:
                    elapsed = time.perf_counter() - step_start
                    result.steps.append(StepResult(name, Outcome.FATAL, elapsed=elapsed))
                    logging.error(f"✗ Unexpected error in {name}")
                    raise
                elapsed = time.perf_counter() - step_start

                if command is None or command.outcome is Outcome.SUCCESS:
                    result.steps.append(StepResult(name, Outcome.SUCCESS, elapsed=elapsed))
                    logging.info(f"✓ Done: {name}")
                    continue

                result.steps.append(StepResult(name, command.outcome, command.message, elapsed))
                if command.outcome is Outcome.FATAL:
                    result.fatal = command.message
                    logging.error(f"✗ Failed: {name} (exit code: {command.exit_code})")
                    break
                logging.warning(f"✗ Failed, continuing: {name} (exit code: {command.exit_code})")
        finally:
            result.elapsed = time.perf_counter() - start
            result.failures = list(self._failures)
            if handler is not None:
                self.log.removeHandler(handler)
                handler.close()
            self.report(result)
        return result

    @staticmethod
    def report(result: RunResult) -> None:
        """Print the wall-clock time of each step and of the whole run."""
        for step in result.steps:
            click.echo(f"{step.name:<20} {step.elapsed:10.6f}")
        click.echo(f"total: {result.elapsed:0.2f} sec")


def _select_steps(ctx, param, value):
    # --steps and --install-only arrive in command line order, so the later one wins
    if param.name == "install_only":
        if value:
            ctx.meta["steps"] = list(INSTALL_STEPS)
    elif value is not None:
        ctx.meta["steps"] = value.split()
    return value


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("repository", required=False)
@click.argument("target_name", required=False)
@click.option("--repository_type", metavar="[git|svn]",
              help="Repository type (detected from the location if omitted)")
@click.option("-b", "--git_branch", help="Branch to clone")
@click.option("-r", "--svn_revision", help="Revision to check out")
@click.option("--build_opts", help="Options for build make targets")
@click.option("--test_opts", help="Options for test make targets")
@click.option("--root_directory", help=f"Root of src/build/install trees [{DEFAULT_ROOT_DIRECTORY}]")
@click.option("--steps", "steps_str", metavar='"STEP1 STEP2..."', callback=_select_steps,
              help="Steps to run, in order")
@click.option("--logfile", help="Build log path")
@click.option("--rm", "remove_mode", is_flag=True, help="Remove the target trees instead of building")
@click.option("--install-only", is_flag=True, callback=_select_steps,
              help="Build and install without running tests")
@click.option("-d", "--debug", is_flag=True, help="Verbose console logging")
@click.pass_context
def main(
    ctx: click.Context,
    repository: Optional[str],
    target_name: Optional[str],
    repository_type: Optional[str],
    git_branch: Optional[str],
    svn_revision: Optional[str],
    build_opts: Optional[str],
    test_opts: Optional[str],
    root_directory: Optional[str],
    steps_str: Optional[str],
    logfile: Optional[str],
    remove_mode: bool,
    install_only: bool,
    debug: bool,
):
    """Checkout, build, install and test Ruby from REPOSITORY as TARGET_NAME."""
    logging.basicConfig(
        level=logging.INFO,
        format=LOG_FORMAT,
        datefmt='%H:%M:%S'
    )
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = BuildConfig.create(
            repository,
            target_name,
            repository_type=repository_type,
            git_branch=git_branch,
            svn_revision=svn_revision,
            root_directory=root_directory,
            build_opts=build_opts,
            test_opts=test_opts,
            steps=ctx.meta.get("steps"),
            logfile=logfile,
        )
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    click.echo(f"Logfile: {config.logfile}", err=True)
    click.echo(config.describe())

    if remove_mode:
        remove(config)
        return

    setup_dirs(config)
    result = BuildRunner(config).run()

    if result.fatal:
        click.echo(result.fatal, err=True)
        sys.exit(1)
    if result.failures:
        for failure in result.failures:
            click.echo(failure, err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
