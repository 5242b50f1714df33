"""
Unit tests for local binary images.

Tests cover:
- Content hashing of binaries
- Dockerfile generation
- Tag format and cache hits/misses in ImageResolver
"""

import asyncio
import hashlib

import pytest

from devnet_deployer.config import ImageRef
from devnet_deployer.errors import ConfigurationError
from devnet_deployer.image_builder import (
    ImageResolver,
    compute_binary_hash,
    fill_binary_hash,
    generate_dockerfile,
    local_image_tag,
)


@pytest.fixture
def binary(tmp_path):
    path = tmp_path / "kona-node"
    path.write_bytes(b"\x7fELF kona")
    return path


class TestComputeBinaryHash:
    def test_matches_sha256(self, binary):
        assert compute_binary_hash(binary) == hashlib.sha256(b"\x7fELF kona").hexdigest()

    def test_content_change_changes_hash(self, binary):
        before = compute_binary_hash(binary)
        binary.write_bytes(b"\x7fELF kona v2")
        assert compute_binary_hash(binary) != before


class TestDockerfile:
    def test_minimal_dockerfile(self):
        dockerfile = generate_dockerfile()
        assert dockerfile.startswith("FROM debian:trixie-slim")
        assert "COPY binary /binary" in dockerfile
        assert 'ENTRYPOINT ["/binary"]' in dockerfile

    def test_custom_base(self):
        assert generate_dockerfile("ubuntu:24.04").startswith("FROM ubuntu:24.04")


class TestLocalImageTag:
    def test_format(self):
        tag = local_image_tag("devnet-42", "kona_node", "a" * 64)
        assert tag == "devnet-devnet-42-kona-node-local:" + "a" * 12


class TestFillBinaryHash:
    def test_registry_ref_unchanged(self):
        ref = ImageRef(image="prom/prometheus", tag="latest")
        assert fill_binary_hash(ref) is ref

    def test_fills_hash_and_absolute_path(self, binary):
        ref = fill_binary_hash(ImageRef(image="x", tag="y", binary=binary))
        assert ref.binary.is_absolute()
        assert ref.binary_sha256 == compute_binary_hash(binary)
        assert ref.hash_key() == f"binary:{ref.binary_sha256}"

    def test_missing_binary(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            fill_binary_hash(ImageRef(image="x", tag="y", binary=tmp_path / "nope"))


class TestImageResolver:
    @pytest.mark.asyncio
    async def test_registry_image_pulled_once(self, fake_docker):
        resolver = ImageResolver(fake_docker, "devnet-test")
        ref = ImageRef(image="ghcr.io/paradigmxyz/op-reth", tag="latest")

        results = await asyncio.gather(*(resolver.resolve("op_reth", ref) for _ in range(5)))

        assert set(results) == {"ghcr.io/paradigmxyz/op-reth:latest"}
        assert fake_docker.pulls == ["ghcr.io/paradigmxyz/op-reth:latest"]

    @pytest.mark.asyncio
    async def test_binary_built_on_miss(self, fake_docker, binary):
        resolver = ImageResolver(fake_docker, "devnet-test")
        ref = fill_binary_hash(ImageRef(image="x", tag="y", binary=binary))

        tag = await resolver.resolve("kona_node", ref)

        assert tag == local_image_tag("devnet-test", "kona_node", ref.binary_sha256)
        assert fake_docker.builds == [tag]

    @pytest.mark.asyncio
    async def test_binary_cache_hit_skips_build(self, fake_docker, binary):
        ref = fill_binary_hash(ImageRef(image="x", tag="y", binary=binary))
        fake_docker.images.add(local_image_tag("devnet-test", "kona_node", ref.binary_sha256))

        await ImageResolver(fake_docker, "devnet-test").resolve("kona_node", ref)

        assert fake_docker.builds == []

    @pytest.mark.asyncio
    async def test_changed_binary_gets_new_tag(self, fake_docker, binary):
        first = await ImageResolver(fake_docker, "devnet-test").resolve(
            "kona_node", fill_binary_hash(ImageRef(image="x", tag="y", binary=binary))
        )
        binary.write_bytes(b"rebuilt")
        second = await ImageResolver(fake_docker, "devnet-test").resolve(
            "kona_node", fill_binary_hash(ImageRef(image="x", tag="y", binary=binary))
        )

        assert first != second
        assert fake_docker.builds == [first, second]
