from typing import Dict


MOVE_KINDS = ("cell_to_cell", "cell_to_background", "background_to_cell")


class ProposalStats:
    """Proposed/accepted counts per local move kind.

    Each worker records into its own instance; instances are merged after the
    local-move batch has joined.
    """

    def __init__(self):
        self.proposed: Dict[str, int] = {}
        self.accepted: Dict[str, int] = {}
        self.stale = 0
        self.reset()

    def reset(self) -> None:
        self.proposed = {kind: 0 for kind in MOVE_KINDS}
        self.accepted = {kind: 0 for kind in MOVE_KINDS}
        self.stale = 0

    def record(self, kind: str, accepted: bool) -> None:
        self.proposed[kind] += 1
        if accepted:
            self.accepted[kind] += 1

    def record_stale(self) -> None:
        self.stale += 1

    def merge(self, other: "ProposalStats") -> None:
        for kind in MOVE_KINDS:
            self.proposed[kind] += other.proposed[kind]
            self.accepted[kind] += other.accepted[kind]
        self.stale += other.stale

    def total_proposed(self) -> int:
        return sum(self.proposed.values())

    def total_accepted(self) -> int:
        return sum(self.accepted.values())

    def acceptance_rate(self) -> float:
        n = self.total_proposed()
        return self.total_accepted() / n if n else 0.0

    def as_dict(self) -> Dict[str, int]:
        out = {}
        for kind in MOVE_KINDS:
            out[f"{kind}_proposed"] = self.proposed[kind]
            out[f"{kind}_accepted"] = self.accepted[kind]
        out["stale"] = self.stale
        return out

    def __repr__(self) -> str:
        parts = ", ".join(f"{k}={self.accepted[k]}/{self.proposed[k]}" for k in MOVE_KINDS)
        return f"ProposalStats({parts}, stale={self.stale})"
