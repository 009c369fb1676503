"""Remote script model and retry contract.

A :class:`Script` is one named shell step together with its retry policy. The
policy is only declared here; executors are responsible for honouring it.
A :class:`ScriptCollection` is the ordered list of steps making up one logical
configuration step on a node.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Tuple


class ExecutorKind(str, Enum):
    """Shell used to run a script on the remote node."""
    LINUX_BASH = 'bash'
    LINUX_SH = 'sh'


@dataclass(frozen=True)
class Script:
    """A single named remote shell step."""
    name: str
    shell_script: str
    executor: ExecutorKind = ExecutorKind.LINUX_BASH
    can_retry: bool = False
    max_retries: int = 0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(f"max_retries cannot be negative for script '{self.name}'")

    @property
    def attempts(self) -> int:
        """Total number of attempts an executor may make for this step."""
        if not self.can_retry:
            return 1
        return 1 + self.max_retries


class ScriptCollection:
    """Append-only, ordered sequence of scripts.

    Once frozen (executors freeze a collection before running it) the
    collection can no longer be extended.
    """

    def __init__(self):
        self._scripts: List[Script] = []
        self._frozen = False

    def append(self, script: Script) -> 'ScriptCollection':
        if self._frozen:
            raise RuntimeError("cannot append to a collection that has already been handed to an executor")
        if not isinstance(script, Script):
            raise TypeError(f"expected Script, got {type(script).__name__}")
        self._scripts.append(script)
        return self

    def extend(self, other: 'ScriptCollection') -> 'ScriptCollection':
        for script in other:
            self.append(script)
        return self

    def freeze(self) -> Tuple[Script, ...]:
        """Mark the collection as consumed and return an immutable snapshot."""
        self._frozen = True
        return tuple(self._scripts)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def is_empty(self) -> bool:
        return not self._scripts

    def names(self) -> List[str]:
        return [s.name for s in self._scripts]

    def __iter__(self) -> Iterator[Script]:
        return iter(tuple(self._scripts))

    def __len__(self) -> int:
        return len(self._scripts)

    def __getitem__(self, idx: int) -> Script:
        return self._scripts[idx]

    def __repr__(self) -> str:
        return f"ScriptCollection({self.names()!r})"


def new_script_collection() -> ScriptCollection:
    """Return an empty script collection."""
    return ScriptCollection()
