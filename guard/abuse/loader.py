"""Signature files: the bundled set and operator-supplied directories."""

from pathlib import Path

from guard.abuse.yaml_signature import YamlSignature

SIGNATURE_DIR = Path(__file__).parent / "signatures"


def load_signatures(directory: str | Path = SIGNATURE_DIR) -> list[YamlSignature]:
    """Every ``*.yml`` signature in *directory*, in file-name order."""
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Signature directory not found: {directory}")
    return [YamlSignature.from_file(path) for path in sorted(directory.glob("*.yml"))]


def load_signature(path: str | Path) -> YamlSignature:
    return YamlSignature.from_file(path)
