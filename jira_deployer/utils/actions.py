"""
Declarative Remote Actions

Remote work is described as values (an action kind plus structured
parameters) instead of hand-built shell strings. Every parameter is quoted
when the action is rendered, so paths and URLs cannot inject shell syntax.
"""

import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Sequence, Tuple


class ActionKind(str, Enum):
    RUN = "run"
    MAKE_DIRS = "make_dirs"
    DOWNLOAD = "download"
    UNPACK = "unpack"
    LIST_ARCHIVE_ROOT = "list_archive_root"
    COPY = "copy"
    MOVE_CONTENTS = "move_contents"
    APT_INSTALL = "apt_install"
    SYSTEMCTL = "systemctl"
    BACKGROUND = "background"


@dataclass(frozen=True)
class RemoteAction:
    """A single unit of remote work"""
    kind: ActionKind
    args: Tuple[str, ...] = ()
    # Extra named parameters, e.g. the target directory of an unpack
    options: Tuple[Tuple[str, str], ...] = ()
    sudo: bool = False
    timeout: int = 60
    # A failing tolerant action is reported but does not raise
    tolerate_failure: bool = False

    def option(self, name: str) -> Optional[str]:
        return dict(self.options).get(name)

    def to_command(self) -> str:
        return _RENDERERS[self.kind](self)

    def __str__(self) -> str:
        return f"{self.kind.value}({' '.join(self.args)})"


def _sudo(action: RemoteAction, command: str) -> str:
    return f"sudo {command}" if action.sudo else command


def _render_run(action: RemoteAction) -> str:
    return _sudo(action, shlex.join(action.args))


def _render_make_dirs(action: RemoteAction) -> str:
    return _sudo(action, shlex.join(["mkdir", "-p", *action.args]))


def _render_download(action: RemoteAction) -> str:
    url, destination = action.args
    return _sudo(action, shlex.join(["wget", "-q", "-O", destination, url]))


def _render_unpack(action: RemoteAction) -> str:
    argv = ["tar", "-xzf", action.args[0]]
    into = action.option("into")
    if into:
        argv += ["-C", into]
    return _sudo(action, shlex.join(argv))


def _render_list_archive_root(action: RemoteAction) -> str:
    return f"{shlex.join(['tar', '-tf', action.args[0]])} | head -n 1"


def _render_copy(action: RemoteAction) -> str:
    return _sudo(action, shlex.join(["cp", "-r", *action.args]))


def _render_move_contents(action: RemoteAction) -> str:
    source, destination = action.args
    # The glob has to stay outside the quotes to expand
    return _sudo(action, f"mv {shlex.quote(source)}/* {shlex.quote(destination)}")


def _render_apt_install(action: RemoteAction) -> str:
    packages = shlex.join(action.args)
    return (
        "sudo apt-get update -qq && "
        f"sudo DEBIAN_FRONTEND=noninteractive apt-get install -qq -y {packages}"
    )


def _render_systemctl(action: RemoteAction) -> str:
    return "sudo " + shlex.join(["systemctl", *action.args])


def _render_background(action: RemoteAction) -> str:
    output = action.option("output") or "/dev/null"
    return _sudo(action, f"nohup {shlex.join(action.args)} > {shlex.quote(output)} 2>&1 &")


_RENDERERS: Dict[ActionKind, Callable[[RemoteAction], str]] = {
    ActionKind.RUN: _render_run,
    ActionKind.MAKE_DIRS: _render_make_dirs,
    ActionKind.DOWNLOAD: _render_download,
    ActionKind.UNPACK: _render_unpack,
    ActionKind.LIST_ARCHIVE_ROOT: _render_list_archive_root,
    ActionKind.COPY: _render_copy,
    ActionKind.MOVE_CONTENTS: _render_move_contents,
    ActionKind.APT_INSTALL: _render_apt_install,
    ActionKind.SYSTEMCTL: _render_systemctl,
    ActionKind.BACKGROUND: _render_background,
}


# ==================== Constructors ====================

def run(*argv: str, sudo: bool = False, timeout: int = 60, tolerate_failure: bool = False) -> RemoteAction:
    return RemoteAction(ActionKind.RUN, tuple(argv), sudo=sudo, timeout=timeout, tolerate_failure=tolerate_failure)


def make_dirs(*paths: str, sudo: bool = False) -> RemoteAction:
    return RemoteAction(ActionKind.MAKE_DIRS, tuple(paths), sudo=sudo)


def download(url: str, destination: str, timeout: int = 120) -> RemoteAction:
    return RemoteAction(ActionKind.DOWNLOAD, (url, destination), timeout=timeout)


def unpack(archive: str, into: Optional[str] = None, timeout: int = 60) -> RemoteAction:
    options = (("into", into),) if into else ()
    return RemoteAction(ActionKind.UNPACK, (archive,), options=options, timeout=timeout)


def list_archive_root(archive: str) -> RemoteAction:
    return RemoteAction(ActionKind.LIST_ARCHIVE_ROOT, (archive,))


def copy(source: str, destination: str, sudo: bool = False) -> RemoteAction:
    return RemoteAction(ActionKind.COPY, (source, destination), sudo=sudo)


def move_contents(
    source_dir: str,
    destination_dir: str,
    sudo: bool = False,
    tolerate_failure: bool = False,
) -> RemoteAction:
    return RemoteAction(
        ActionKind.MOVE_CONTENTS,
        (source_dir, destination_dir),
        sudo=sudo,
        tolerate_failure=tolerate_failure,
    )


def apt_install(packages: Sequence[str], timeout: int = 180) -> RemoteAction:
    return RemoteAction(ActionKind.APT_INSTALL, tuple(packages), sudo=True, timeout=timeout)


def systemctl(verb: str, unit: str) -> RemoteAction:
    return RemoteAction(ActionKind.SYSTEMCTL, (verb, unit), sudo=True)


def background(*argv: str, output: str, sudo: bool = False) -> RemoteAction:
    return RemoteAction(ActionKind.BACKGROUND, tuple(argv), options=(("output", output),), sudo=sudo)
