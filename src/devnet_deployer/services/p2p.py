"""Consensus-layer p2p identities for kona-node.

Each node gets a secp256k1 key persisted next to its data, so a redeploy
over the same output directory keeps the same node ids and enodes.
"""

from dataclasses import dataclass
from pathlib import Path

from cryptography.hazmat.primitives.asymmetric import ec

from ..errors import ConfigurationError

P2P_KEY_FILE = "p2p.key"
KONA_P2P_PORT = 9222


@dataclass(frozen=True)
class P2PKey:
    private_key: str  # 32 bytes, hex, no 0x prefix
    node_id: str  # uncompressed public key without the 0x04 marker, hex

    @classmethod
    def from_private_key(cls, private_key: str) -> "P2PKey":
        raw = private_key.strip().removeprefix("0x")
        try:
            secret = bytes.fromhex(raw)
            if len(secret) != 32:
                raise ValueError(f"expected 32 bytes, got {len(secret)}")
            key = ec.derive_private_key(int.from_bytes(secret, "big"), ec.SECP256K1())
        except ValueError as e:
            raise ConfigurationError(f"Invalid p2p private key: {e}") from e
        numbers = key.public_key().public_numbers()
        node_id = numbers.x.to_bytes(32, "big").hex() + numbers.y.to_bytes(32, "big").hex()
        return cls(private_key=raw.lower(), node_id=node_id)

    @classmethod
    def generate(cls) -> "P2PKey":
        value = ec.generate_private_key(ec.SECP256K1()).private_numbers().private_value
        return cls.from_private_key(value.to_bytes(32, "big").hex())

    def enode(self, host: str, port: int = KONA_P2P_PORT) -> str:
        return f"enode://{self.node_id}@{host}:{port}"


def load_or_create_p2p_key(path: Path) -> P2PKey:
    """Read the key at `path`, creating it on first use."""
    if path.is_file():
        return P2PKey.from_private_key(path.read_text())
    key = P2PKey.generate()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(key.private_key)
    path.chmod(0o600)
    return key
