"""
database/rule_store.py
──────────────────────
YAML-backed rule-set store.

The rule-set is an ordered list of rule documents (see models/rule.py).  It
is loaded once per process start; a malformed document or a duplicated
ruleID is a :class:`ConfigurationError` and aborts start-up.

Copy-trade setup appends generated rules through :meth:`RuleSetStore.append_rules`,
which skips any rule whose content hash is already present, so running the
setup twice never duplicates rules.  Appends rewrite the file atomically
(temp file + ``os.replace``).
"""
from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Iterable

import yaml
from pydantic import ValidationError as PydanticValidationError

from core.errors import ConfigurationError
from models.rule import Rule

logger = logging.getLogger(__name__)

_DEFAULT_RULES_PATH = Path(__file__).parent.parent / "config" / "rules.yaml"


def parse_rules(documents: Iterable[dict[str, Any]]) -> list[Rule]:
    """Validate rule documents; raises ConfigurationError on the first bad one."""
    rules: list[Rule] = []
    seen_ids: set[str] = set()
    for idx, doc in enumerate(documents):
        try:
            rule = Rule.model_validate(doc)
        except (PydanticValidationError, ValueError) as exc:
            raise ConfigurationError(
                f"malformed rule at index {idx}", details={"error": str(exc)}
            ) from exc
        if rule.rule_id in seen_ids:
            raise ConfigurationError("duplicate ruleID in rule-set", details={"ruleID": rule.rule_id})
        seen_ids.add(rule.rule_id)
        rules.append(rule)
    return rules


class RuleSetStore:
    """Load and append rules in a YAML rule-set file.

    Usage::

        store = RuleSetStore("config/rules.yaml")
        rules = store.load()
        added = store.append_rules(generated)
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self._path = Path(path) if path else _DEFAULT_RULES_PATH

    @property
    def path(self) -> Path:
        return self._path

    def _read_documents(self) -> list[dict[str, Any]]:
        if not self._path.exists():
            return []
        try:
            with open(self._path, encoding="utf-8") as fh:
                data = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            raise ConfigurationError("rule-set is not valid YAML", details={"path": str(self._path)}) from exc
        if data is None:
            return []
        if isinstance(data, dict):
            data = data.get("rules", [])
        if not isinstance(data, list):
            raise ConfigurationError("rule-set must be a list of rules", details={"path": str(self._path)})
        return data

    def load(self) -> list[Rule]:
        rules = parse_rules(self._read_documents())
        logger.info("Loaded %d rule(s) from %s", len(rules), self._path)
        return rules

    def rules_to_append(self, new_rules: Iterable[Rule]) -> list[Rule]:
        """Rules from *new_rules* not yet present (by content hash).

        Reads and validates the current rule-set without writing; raises
        ConfigurationError if it is malformed or a ruleID is reused.
        """
        return self._new_rules(self.load(), new_rules)

    def append_rules(self, new_rules: Iterable[Rule]) -> list[Rule]:
        """Append rules not already present (by content hash); return those added."""
        existing = self.load()
        added = self._new_rules(existing, new_rules)
        if added:
            self._write_documents([r.to_document() for r in [*existing, *added]])
            logger.info("Appended %d rule(s) to %s", len(added), self._path)
        return added

    @staticmethod
    def _new_rules(existing: list[Rule], new_rules: Iterable[Rule]) -> list[Rule]:
        hashes = {r.content_hash() for r in existing}
        ids = {r.rule_id for r in existing}

        added: list[Rule] = []
        for rule in new_rules:
            digest = rule.content_hash()
            if digest in hashes:
                logger.info("Rule %s already present (hash %s…); skipped", rule.rule_id, digest[:12])
                continue
            if rule.rule_id in ids:
                raise ConfigurationError(
                    "ruleID already used by a different rule", details={"ruleID": rule.rule_id}
                )
            hashes.add(digest)
            ids.add(rule.rule_id)
            added.append(rule)
        return added

    def _write_documents(self, documents: list[dict[str, Any]]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".rules-", suffix=".yaml")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                yaml.safe_dump(documents, fh, sort_keys=False)
            os.replace(tmp_name, self._path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
