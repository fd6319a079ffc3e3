"""Boundary to the external proving backend.

The backend itself (circuit, Groth16) lives outside this package and is
reached through the ``ProvingBackend`` protocol. This module owns what the
pool needs from it:

- The positional public-signal layout of each circuit. The verifier reads
  signals by position, so this order is part of the wire contract.
- One normalization step turning backend output (a list, or a mapping keyed
  by name or by position) into an ordered tuple of field elements. Nothing
  downstream inspects the raw shape again.
- Circuit artifacts with SHA-256 integrity checks.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional, Protocol, Sequence, Tuple, Union

from zkpool.exceptions import IntegrityError, NotFoundError, ValidationError
from zkpool.utils.encoding import FieldCodec
from zkpool.utils.hash import file_sha256, sha256

logger = logging.getLogger(__name__)

SIGNAL_LAYOUTS: Dict[str, Tuple[str, ...]] = {
    "deposit": (
        "commitment",
        "owner_key",
        "new_root",
        "old_root",
        "next_leaf_index",
        "deposit_hash",
        "amount",
    ),
    "transfer": (
        "out1",
        "out2",
        "nullifier",
        "root",
        "new_root1",
        "new_root2",
        "new_next_leaf_index",
        "enc_tag1",
        "enc_tag2",
    ),
    "withdraw": (
        "nullifier",
        "root",
        "amount",
        "token_id",
        "recipient",
    ),
}

# Names the circuits' JSON output uses for the same signals.
_ALIASES = {
    "newCommitment": "commitment",
    "ownerCipherPayPubKey": "owner_key",
    "merkleRoot": "root",
    "newMerkleRoot": "new_root",
    "oldMerkleRoot": "old_root",
    "nextLeafIndex": "next_leaf_index",
    "depositHash": "deposit_hash",
    "out1Commitment": "out1",
    "out2Commitment": "out2",
    "newMerkleRoot1": "new_root1",
    "newMerkleRoot2": "new_root2",
    "newNextLeafIndex": "new_next_leaf_index",
    "encNote1Hash": "enc_tag1",
    "encNote2Hash": "enc_tag2",
    "tokenId": "token_id",
}

CIRCUIT_KINDS = tuple(SIGNAL_LAYOUTS)


def layout_for(kind: str) -> Tuple[str, ...]:
    """
    Signal layout of a circuit.

    Raises:
        ValidationError: If the kind is unknown
    """
    try:
        return SIGNAL_LAYOUTS[kind]
    except KeyError:
        raise ValidationError(f"Unknown circuit kind: {kind}") from None


@dataclass(frozen=True)
class PublicSignals:
    """Public signals of one proof, in verifier order."""

    kind: str
    values: Tuple[int, ...]

    def __post_init__(self):
        expected = len(layout_for(self.kind))
        if len(self.values) != expected:
            raise ValidationError(f"{self.kind} expects {expected} public signals, got {len(self.values)}")

    def __getitem__(self, name: str) -> int:
        return self.values[layout_for(self.kind).index(name)]

    def __iter__(self) -> Iterator[int]:
        return iter(self.values)

    def __len__(self) -> int:
        return len(self.values)

    def named(self) -> Dict[str, int]:
        return dict(zip(layout_for(self.kind), self.values))

    def as_strings(self) -> list:
        """Decimal strings, the form verifiers consume."""
        return [str(v) for v in self.values]


def normalize_public_signals(raw: Union[Sequence[Any], Mapping[str, Any]], kind: str) -> PublicSignals:
    """
    Convert backend output into ordered public signals.

    Accepts a sequence already in verifier order, a mapping keyed by
    position (``"0"``, ``"1"``, ...) or a mapping keyed by signal name
    (snake_case or the circuit's camelCase).

    Raises:
        ValidationError: If a signal is missing, extra or malformed
    """
    layout = layout_for(kind)

    if isinstance(raw, Mapping):
        keys = list(raw.keys())
        if keys and all(str(k).isdigit() for k in keys):
            ordered = [raw[k] for k in sorted(keys, key=lambda k: int(k))]
        else:
            by_name = {_ALIASES.get(str(k), str(k)): v for k, v in raw.items()}
            missing = [name for name in layout if name not in by_name]
            if missing:
                raise ValidationError(f"{kind} public signals missing {', '.join(missing)}")
            extra = sorted(set(by_name) - set(layout))
            if extra:
                raise ValidationError(f"{kind} public signals have unknown names {', '.join(extra)}")
            ordered = [by_name[name] for name in layout]
    elif isinstance(raw, (list, tuple)):
        ordered = list(raw)
    else:
        raise ValidationError(f"Unsupported public signal container {type(raw).__name__}")

    return PublicSignals(kind=kind, values=tuple(FieldCodec.to_field(v) for v in ordered))


@dataclass(frozen=True)
class ProofResult:
    """A proof with its normalized public signals."""

    proof: Dict[str, Any]
    public_signals: PublicSignals

    @classmethod
    def from_backend(cls, kind: str, proof: Dict[str, Any], raw_signals: Any) -> "ProofResult":
        return cls(proof=dict(proof), public_signals=normalize_public_signals(raw_signals, kind))


@dataclass(frozen=True)
class CircuitArtifacts:
    """Locations of one circuit's files plus their declared digests."""

    kind: str
    wasm: Path
    zkey: Path
    vkey: Path
    sha256: Dict[str, str] = field(default_factory=dict)

    def load_vkey(self) -> Dict[str, Any]:
        """Parse the verification key JSON."""
        with open(self.vkey, "r", encoding="utf-8") as fh:
            return json.load(fh)


class ProvingBackend(Protocol):
    """External prover/verifier."""

    def prove(self, artifacts: CircuitArtifacts, witness: Dict[str, Any]) -> Tuple[Dict[str, Any], Any]:
        """Return ``(proof, raw public signals)`` for a witness."""
        ...

    def verify(self, vkey: Dict[str, Any], public_signals: Sequence[str], proof: Dict[str, Any]) -> bool:
        ...


class ArtifactStore:
    """
    Loads and integrity-checks circuit artifacts.

    Each circuit has ``<base_dir>/<kind>/artifacts.json``::

        {"wasm": "deposit.wasm", "zkey": "deposit.zkey", "vkey": "vkey.json",
         "sha256": {"wasm": "...", "zkey": "...", "vkey": "..."}}

    Paths are relative to the manifest. Loaded artifacts are cached on the
    store instance.
    """

    MANIFEST = "artifacts.json"

    def __init__(self, base_dir: Union[str, Path]):
        self.base_dir = Path(base_dir)
        self._cache: Dict[str, CircuitArtifacts] = {}

    def load(self, kind: str) -> CircuitArtifacts:
        """
        Load a circuit's artifacts, verifying declared digests.

        Raises:
            NotFoundError: If the manifest or a file is missing
            IntegrityError: If a file's SHA-256 differs from the manifest
        """
        layout_for(kind)
        if kind in self._cache:
            return self._cache[kind]

        manifest_path = self.base_dir / kind / self.MANIFEST
        if not manifest_path.is_file():
            raise NotFoundError(f"No artifact manifest at {manifest_path}")

        with open(manifest_path, "r", encoding="utf-8") as fh:
            manifest = json.load(fh)

        root = manifest_path.parent
        try:
            artifacts = CircuitArtifacts(
                kind=kind,
                wasm=root / manifest["wasm"],
                zkey=root / manifest["zkey"],
                vkey=root / manifest["vkey"],
                sha256={k: v.lower() for k, v in (manifest.get("sha256") or {}).items()},
            )
        except KeyError as e:
            raise ValidationError(f"{kind} manifest is missing {e}") from e

        for part, expected in artifacts.sha256.items():
            if part not in ("wasm", "zkey", "vkey"):
                raise ValidationError(f"{kind} manifest declares a digest for unknown file {part!r}")
            path = getattr(artifacts, part)
            if not path.is_file():
                raise NotFoundError(f"{kind} {part} missing at {path}")
            actual = file_sha256(path)
            if actual != expected:
                logger.error("%s %s integrity mismatch: expected %s got %s", kind, part, expected, actual)
                raise IntegrityError(f"{kind} {part} integrity mismatch")

        self._cache[kind] = artifacts
        return artifacts


class ProofService:
    """Proves and verifies through a backend, normalizing exactly once."""

    def __init__(self, backend: ProvingBackend, artifacts: ArtifactStore):
        self.backend = backend
        self.artifacts = artifacts

    def prove(self, kind: str, witness: Dict[str, Any]) -> ProofResult:
        proof, raw = self.backend.prove(self.artifacts.load(kind), witness)
        return ProofResult.from_backend(kind, proof, raw)

    def verify(self, kind: str, public_signals: PublicSignals, proof: Dict[str, Any]) -> bool:
        """
        Verify a proof against the circuit's verification key.

        Raises:
            ValidationError: If the signals belong to another circuit
        """
        if public_signals.kind != kind:
            raise ValidationError(f"Signals for {public_signals.kind} submitted as {kind}")
        vkey = self.artifacts.load(kind).load_vkey()
        return bool(self.backend.verify(vkey, public_signals.as_strings(), proof))


class TransparentBackend:
    """
    Non-zero-knowledge stand-in for development and tests.

    The "proof" is a digest binding the verification key to the public
    signals, so verification catches tampered signals but proves nothing
    about private inputs. Public signals are read from the witness by name.
    """

    def prove(self, artifacts: CircuitArtifacts, witness: Dict[str, Any]) -> Tuple[Dict[str, Any], Any]:
        layout = layout_for(artifacts.kind)
        missing = [name for name in layout if name not in witness]
        if missing:
            raise ValidationError(f"Witness missing public inputs {', '.join(missing)}")
        signals = [FieldCodec.to_decimal(witness[name]) for name in layout]
        return {"protocol": "transparent", "digest": self._digest(artifacts.load_vkey(), signals)}, signals

    def verify(self, vkey: Dict[str, Any], public_signals: Sequence[str], proof: Dict[str, Any]) -> bool:
        return proof.get("protocol") == "transparent" and proof.get("digest") == self._digest(
            vkey, list(public_signals)
        )

    @staticmethod
    def _digest(vkey: Dict[str, Any], signals: Sequence[str]) -> str:
        payload = json.dumps({"vkey": vkey, "signals": list(signals)}, sort_keys=True)
        return sha256(payload).hex()


def write_artifacts(base_dir: Union[str, Path], kind: str, vkey: Optional[Dict[str, Any]] = None) -> CircuitArtifacts:
    """
    Write a minimal artifact set with a digest manifest.

    Used to bootstrap a development relayer and by tests.
    """
    layout_for(kind)
    root = Path(base_dir) / kind
    root.mkdir(parents=True, exist_ok=True)
    files = {
        "wasm": (f"{kind}.wasm", b"\x00asm" + kind.encode()),
        "zkey": (f"{kind}.zkey", b"zkey:" + kind.encode()),
        "vkey": ("vkey.json", json.dumps(vkey or {"protocol": "transparent", "circuit": kind}).encode()),
    }
    manifest: Dict[str, Any] = {"sha256": {}}
    for part, (name, content) in files.items():
        (root / name).write_bytes(content)
        manifest[part] = name
        manifest["sha256"][part] = file_sha256(root / name)
    (root / ArtifactStore.MANIFEST).write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    return ArtifactStore(base_dir).load(kind)
