"""Specification file loading."""

from pathlib import Path

from review_loop.core.errors import EmptySpecError, SpecEncodingError, SpecNotFoundError


def load_spec(path: str | Path) -> str:
    """Read a specification file.

    Raises SpecNotFoundError, SpecEncodingError or EmptySpecError.
    """
    spec_path = Path(path).expanduser().resolve()
    if not spec_path.is_file():
        raise SpecNotFoundError(str(spec_path))

    try:
        content = spec_path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise SpecEncodingError(str(spec_path)) from e
    except OSError as e:
        raise SpecNotFoundError(str(spec_path)) from e

    if not content.strip():
        raise EmptySpecError(str(spec_path))
    return content


class FileSpecLoader:
    def load(self, path: str | Path) -> str:
        return load_spec(path)
