from __future__ import annotations
from typing import NewType, Literal, Union

Address = NewType("Address", str)   # 0x-prefixed, lowercase
TxHash  = NewType("TxHash", str)    # 66-char 0x-hash, lowercase
BlockId = Union[int, str]           # height or 66-char block hash
TickStatus = Literal["ingested", "waiting", "retry", "skipped", "done"]
SearchKind = Literal["address", "transaction", "block"]
