"""
Tests for docker references, the docker transport and transport-qualified names.
"""
import pytest

from image_delta.context import OperationContext
from image_delta.errors import ReferenceResolutionError
from image_delta.manifest import Descriptor
from image_delta.storage.base import SystemContext
from image_delta.storage.docker import DockerReference, parse_docker_reference
from image_delta.storage.oci_archive import OciArchiveReference
from image_delta.storage.oci_errors import OciDigestMismatch
from image_delta.storage.transports import docker_reference, oci_archive_reference, parse_image_name

from ..helpers.image_helpers import digest_of, make_image

DIGEST = "sha256:" + "ab" * 32


class TestParseDockerReference:
    """Test parse_docker_reference."""

    @pytest.mark.parametrize("value,domain,repository,tag,digest", [
        ("alpine", "docker.io", "library/alpine", "latest", None),
        ("//alpine:3.19", "docker.io", "library/alpine", "3.19", None),
        ("user/app:v1", "docker.io", "user/app", "v1", None),
        ("index.docker.io/alpine", "docker.io", "library/alpine", "latest", None),
        ("localhost/app", "localhost", "app", "latest", None),
        ("localhost:5000/team/app:dev", "localhost:5000", "team/app", "dev", None),
        ("quay.io/org/app", "quay.io", "org/app", "latest", None),
        (f"quay.io/org/app@{DIGEST}", "quay.io", "org/app", None, DIGEST),
    ])
    def test_valid(self, value, domain, repository, tag, digest):
        ref = parse_docker_reference(value)
        assert (ref.domain, ref.repository, ref.tag, ref.digest) == (domain, repository, tag, digest)

    def test_ref_prefers_digest(self):
        assert parse_docker_reference(f"app@{DIGEST}").ref == DIGEST
        assert parse_docker_reference("app:v2").ref == "v2"

    def test_string_forms(self):
        ref = parse_docker_reference("registry.test/app:v1")
        assert ref.string_within_transport() == "//registry.test/app:v1"
        assert str(ref) == "docker://registry.test/app:v1"
        pinned = parse_docker_reference(f"registry.test/app@{DIGEST}")
        assert pinned.string_within_transport() == f"//registry.test/app@{DIGEST}"

    @pytest.mark.parametrize("value,match", [
        ("", "empty reference"),
        ("//", "empty reference"),
        ("Upper/App", "repository component"),
        ("app:bad tag", "malformed tag"),
        ("app@sha256:xyz", "malformed digest"),
        (f"app:v1@{DIGEST}", "both a tag and a digest"),
        (":v1", "missing repository"),
        ("registry.test//app", "repository component"),
    ])
    def test_invalid(self, value, match):
        with pytest.raises(ReferenceResolutionError, match=match):
            parse_docker_reference(value)

    def test_equality_ignores_client_factory(self, registry):
        assert (parse_docker_reference("app", client_factory=registry.client_factory)
                == parse_docker_reference("app"))


class TestTransports:
    """Test transport prefixes."""

    def test_docker_prefix_is_optional(self):
        assert docker_reference("docker://registry.test/app:v1") == docker_reference("registry.test/app:v1")

    def test_oci_archive_reference(self):
        ref = oci_archive_reference("/tmp/out.tar:app:v1")
        assert isinstance(ref, OciArchiveReference)
        assert ref.image_name == "app:v1"
        assert oci_archive_reference("/tmp/out.tar").image_name is None
        with pytest.raises(ReferenceResolutionError, match="missing path"):
            oci_archive_reference(":name")

    def test_parse_image_name(self):
        assert isinstance(parse_image_name("docker://alpine"), DockerReference)
        assert isinstance(parse_image_name("oci-archive:/tmp/x.tar"), OciArchiveReference)

    @pytest.mark.parametrize("name,match", [
        ("alpine", "expected transport:reference"),
        ("docker:alpine", "start with '//'"),
        ("dir:/tmp/x", "unknown transport"),
    ])
    def test_parse_image_name_errors(self, name, match):
        with pytest.raises(ReferenceResolutionError, match=match):
            parse_image_name(name)


class TestDockerTransport:
    """Sources and destinations over the fake registry."""

    @pytest.fixture
    def ctx(self):
        return OperationContext.background()

    def test_source_reads_tag_and_children(self, registry, layers, ctx):
        image = make_image(layers[:2])
        registry.add_image("registry.test/app", "v1", image)
        ref = parse_docker_reference("registry.test/app:v1", client_factory=registry.client_factory)

        source = ref.new_image_source(ctx, SystemContext(insecure=True))
        try:
            assert source.get_manifest(ctx) == (image.manifest, image.media_type)
            assert source.get_manifest(ctx, image.digest)[0] == image.manifest
            with source.get_blob(ctx, image.layer_digests[0]) as blob:
                assert blob.read_all() == layers[0]
        finally:
            source.close()

        assert registry.contexts[0][0] == "registry.test"
        assert registry.contexts[0][1].insecure
        assert registry.closed_clients == 1

    def test_destination_reuses_existing_blobs(self, registry, layers, ctx):
        registry.add_blob("registry.test/app", layers[0])
        ref = parse_docker_reference("registry.test/app:v1", client_factory=registry.client_factory)
        dest = ref.new_image_destination(ctx, SystemContext())
        try:
            assert dest.try_reusing_blob(ctx, Descriptor(digest=digest_of(layers[0])))
            assert not dest.try_reusing_blob(ctx, Descriptor(digest=digest_of(layers[1])))
            dest.put_blob(ctx, [layers[1]], Descriptor(digest=digest_of(layers[1]), size=len(layers[1])))
        finally:
            dest.close()
        assert registry.uploaded("registry.test/app") == [digest_of(layers[1])]

    def test_destination_manifest_refs(self, registry, layers, ctx):
        image = make_image(layers[:1])
        ref = parse_docker_reference("registry.test/app:v1", client_factory=registry.client_factory)
        dest = ref.new_image_destination(ctx, SystemContext())
        try:
            dest.put_manifest(ctx, image.manifest, image.media_type, image.digest)
            dest.put_manifest(ctx, image.manifest, image.media_type)
            dest.commit(ctx)
        finally:
            dest.close()
        assert registry.manifest_puts == [
            ("registry.test/app", image.digest),
            ("registry.test/app", "v1"),
        ]

    def test_destination_pinned_by_digest_verifies_manifest(self, registry, layers, ctx):
        image = make_image(layers[:1])
        other = make_image(layers[1:2])
        ref = parse_docker_reference(f"registry.test/app@{image.digest}", client_factory=registry.client_factory)
        dest = ref.new_image_destination(ctx, SystemContext())
        try:
            with pytest.raises(OciDigestMismatch):
                dest.put_manifest(ctx, other.manifest, other.media_type)
            dest.put_manifest(ctx, image.manifest, image.media_type)
        finally:
            dest.close()
        assert registry.manifest_puts == [("registry.test/app", image.digest)]
