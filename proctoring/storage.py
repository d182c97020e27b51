from pathlib import Path


class BaseStorage:
    backend: str = "local"

    def save_report_bytes(self, key: str, data: bytes, content_type: str) -> str:
        raise NotImplementedError

    def open_bytes(self, key: str) -> bytes:
        raise NotImplementedError


class LocalStorage(BaseStorage):
    backend: str = "local"

    def __init__(self, report_dir: Path) -> None:
        self.report_dir = report_dir
        self.report_dir.mkdir(parents=True, exist_ok=True)

    def _resolve(self, key: str) -> Path:
        name = key.split("/", 1)[1] if key.startswith("reports/") else key
        path = (self.report_dir / name).resolve()
        if self.report_dir.resolve() not in path.parents:
            raise ValueError(f"Invalid report key: {key}")
        return path

    def save_report_bytes(self, key: str, data: bytes, content_type: str) -> str:
        path = self._resolve(key)
        path.write_bytes(data)
        return str(path)

    def open_bytes(self, key: str) -> bytes:
        return self._resolve(key).read_bytes()


def get_storage(report_dir: Path, backend: str = "local") -> BaseStorage:
    if backend != "local":
        raise ValueError(f"Unsupported storage backend: {backend}")
    return LocalStorage(report_dir=report_dir)
