from pathlib import Path
from typing import Union

import orjson

from .schema import ProductRecord


class JsonlArchive:
    """Append-only JSONL copy of every extracted record, one object per line."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def append_jsonl(self, obj: dict) -> None:
        with open(self.path, "ab") as f:
            f.write(orjson.dumps(obj) + b"\n")

    def append(self, record: ProductRecord) -> None:
        self.append_jsonl(orjson.loads(record.model_dump_json()))
