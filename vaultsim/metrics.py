from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Any, List
import pandas as pd

@dataclass
class MetricsStore:
    vault_rows: List[Dict[str, Any]] = field(default_factory=list)
    holder_rows: List[Dict[str, Any]] = field(default_factory=list)

    def add_vault(self, row: Dict[str, Any]) -> None:
        self.vault_rows.append(row)

    def add_holder_rows(self, rows: List[Dict[str, Any]]) -> None:
        self.holder_rows.extend(rows)

    def vault_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.vault_rows)

    def holder_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.holder_rows)

    def failures_df(self) -> pd.DataFrame:
        """Failed operations per tick, one column per `op:ErrorClass` key."""
        df = self.vault_df()
        if df.empty:
            return df
        cols = [c for c in df.columns if c.startswith("fail:")]
        return df[["tick"] + cols].fillna(0) if cols else df[["tick"]]
