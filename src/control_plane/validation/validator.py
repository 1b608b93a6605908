import json
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import jsonschema
except ImportError:  # pragma: no cover - dependency not installed yet
    jsonschema = None


def schema_root() -> Path:
    return Path(__file__).resolve().parent / "schemas"


class SchemaValidator:
    def __init__(self, schemas_dir: Optional[Path] = None):
        self.schemas_dir = schemas_dir or schema_root()
        self._cache: Dict[str, Dict[str, Any]] = {}

    def validate_job_request(self, payload: Dict[str, Any]) -> None:
        self._validate(payload, self._load_schema(self.schemas_dir / "job-request.v1.schema.json"))

    def validate_provider_result(self, payload: Dict[str, Any]) -> None:
        self._validate(payload, self._load_schema(self.schemas_dir / "provider-result.v1.schema.json"))

    def validate_started(self, payload: Dict[str, Any]) -> None:
        self._validate(payload, self._load_schema(self.schemas_dir / "attempt-started.v1.schema.json"))

    def _load_schema(self, path: Path) -> Dict[str, Any]:
        cache_key = str(path)
        if cache_key in self._cache:
            return self._cache[cache_key]
        with path.open("r", encoding="utf-8") as handle:
            schema = json.load(handle)
        self._cache[cache_key] = schema
        return schema

    def _validate(self, instance: Dict[str, Any], schema: Dict[str, Any]) -> None:
        if jsonschema is None:
            raise RuntimeError("jsonschema dependency is not installed")
        jsonschema.validate(instance=instance, schema=schema)
