import json
import os
import threading
from typing import Callable, Dict, List, Optional, Tuple

from panelbridge.config import MAX_COMPLETIONS
from panelbridge.models import CommandNode, CommandTree, Completion
from panelbridge.utils import log_error, safe_name


def _strip_slash(text: str) -> str:
    return text[1:] if text.startswith("/") else text


def _is_placeholder(key: str) -> bool:
    return key.startswith("<") and key.endswith(">")


class CompletionEngine:
    """Prefix completion over the bridge-provided command tree.

    The tree is replaced wholesale and only read by queries. Root names of the
    last tree received are cached to ``cache_path`` so a fresh process can
    complete commands before the bridge answers.
    """

    def __init__(self, server: str, cache_dir: str = "", requester: Optional[Callable[[], bool]] = None):
        self.server = server
        self.requester = requester
        self.cache_path = os.path.join(cache_dir, f"commands_{safe_name(server)}.json") if cache_dir else ""
        self.lock = threading.Lock()
        self.tree: Optional[CommandTree] = None
        self.cached_roots: Tuple[str, ...] = self._load_cache()

    def _load_cache(self) -> Tuple[str, ...]:
        if not self.cache_path or not os.path.isfile(self.cache_path):
            return ()
        try:
            with open(self.cache_path, "r", encoding="utf-8") as handle:
                names = json.load(handle).get("roots", [])
            return tuple(sorted(str(name) for name in names))
        except Exception as exc:
            log_error(f"command cache unreadable ({self.cache_path}): {exc}")
            return ()

    def _store_cache(self, roots: Tuple[str, ...]) -> None:
        if not self.cache_path:
            return
        try:
            with open(self.cache_path, "w", encoding="utf-8") as handle:
                json.dump({"server": self.server, "roots": list(roots)}, handle)
        except Exception as exc:
            log_error(f"command cache write failed ({self.cache_path}): {exc}")

    def set_tree(self, tree: CommandTree) -> None:
        with self.lock:
            self.tree = tree
            self.cached_roots = tree.root_names
        self._store_cache(tree.root_names)

    def has_tree(self) -> bool:
        return self.tree is not None

    def root_names(self) -> Tuple[str, ...]:
        tree = self.tree
        if tree is not None:
            return tree.root_names
        return self.cached_roots

    def complete(self, prefix: str) -> List[str]:
        needle = _strip_slash(prefix).lower()
        return sorted(name for name in self.root_names() if name.lower().startswith(needle))

    def complete_line(self, buffer: str) -> List[Completion]:
        """Completions for a full console line, walking into subcommands."""
        clean = _strip_slash(buffer)
        parts = clean.split(" ")
        tree = self.tree

        if len(parts) == 1:
            results = []
            for name in self.complete(parts[0])[:MAX_COMPLETIONS]:
                node = tree.commands.get(name) if tree is not None else None
                results.append(Completion(
                    text=name,
                    tooltip=node.description if node else None,
                    has_children=bool(node and node.children),
                ))
            return results

        if tree is None:
            return []
        node = tree.find(parts[0])
        if node is None:
            return []

        remaining = parts[1:]
        while len(remaining) > 1:
            child = self._match_child(node.children, remaining[0])
            if child is None:
                return []
            node = child
            remaining = remaining[1:]

        if not node.children:
            return []
        return self._complete_children(node.children, remaining[-1])

    @staticmethod
    def _match_child(children: Dict[str, CommandNode], typed: str) -> Optional[CommandNode]:
        lowered = typed.lower()
        literal = children.get(lowered)
        if literal is not None and not literal.is_argument:
            return literal
        for key, child in children.items():
            if not child.is_argument and not _is_placeholder(key) and key.lower() == lowered:
                return child
        for key, child in children.items():
            if child.is_argument or _is_placeholder(key):
                return child
        return None

    @staticmethod
    def _complete_children(children: Dict[str, CommandNode], prefix: str) -> List[Completion]:
        needle = prefix.lower()
        results: List[Completion] = []
        for key, child in children.items():
            has_children = bool(child.children)
            if child.is_argument or _is_placeholder(key):
                if child.examples:
                    tooltip = f"({child.type})" if child.type else None
                    for example in child.examples:
                        if example.lower().startswith(needle):
                            results.append(Completion(example, tooltip, has_children))
                elif not needle:
                    label = child.type or key.strip("<>")
                    results.append(Completion(f"<{label}>", f"Type a {label} value", has_children, True))
            elif key.lower().startswith(needle):
                results.append(Completion(key, child.description, has_children))
        results.sort(key=lambda c: c.text)
        return results[:MAX_COMPLETIONS]

    def fetch_tree(self) -> bool:
        """Ask the bridge for a fresh tree; the answer arrives as an event."""
        if self.requester is None:
            return False
        return bool(self.requester())
