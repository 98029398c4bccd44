"""Account context passed through a pipeline run."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping


@dataclass(frozen=True)
class AccountContext:
    """Identity and preferences of the account whose mail is processed.

    ``provider`` is opaque to the engine; it is recorded in logs and handed to
    adapters but never branched on.
    """

    account_id: str
    provider: str = "unknown"
    email_address: str = ""
    multi_rule_selection: bool = False
    settings: Mapping[str, Any] = field(default_factory=dict)

    def summary(self) -> Dict[str, Any]:
        return {"account_id": self.account_id, "provider": self.provider}
