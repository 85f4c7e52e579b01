"""
Key Material Tests
==================
Publisher-side generation, artifact catalog and verification.
"""

import pytest

from fakes import PlaintextSession

from argmin_he.core.artifact_store import MemoryArtifactStore
from argmin_he.core.engine import ArtifactKind
from argmin_he.core.errors import (
    ArtifactCorrupt,
    ArtifactOverwrite,
    ConfigurationError,
    EvaluationFailure,
    KeyMismatch,
    VerificationFailure,
)
from argmin_he.core.parameters import ArtifactNames, ParameterSet
from argmin_he.core.security_logger import OperationType, PUBLISHER
from argmin_he.publisher.key_material import KeyMaterialGenerator, pad_vector
from argmin_he.publisher.verifier import Verifier


class TestKeyMaterialGenerator:
    """Tests for context and key generation"""

    @pytest.fixture
    def generator(self, publisher_session, security_logger):
        return KeyMaterialGenerator(publisher_session, security_logger)

    def test_generate(self, generator, params):
        material = generator.generate(params, [1, 2, 3, 4])

        assert material.vector_size == 4
        assert material.initial_ciphertext.slots == params.batch_size
        assert material.initial_ciphertext.key_id == material.key_pair.key_id
        assert set(material.bootstrap_bundles) == {1 << 18}
        assert material.default_bundle.base_g is None
        assert material.summary()['key_id'] == material.key_pair.key_id

    def test_context_generation_resets_engine(self, generator, publisher_session, params):
        before = publisher_session.reset_count
        generator.build_context(params)
        assert publisher_session.reset_count == before + 1
        assert publisher_session.has_context

    def test_invalid_parameters(self, generator):
        with pytest.raises(ConfigurationError):
            generator.build_context(ParameterSet(ring_dim=63))

    @pytest.mark.parametrize("values", [
        [],
        [1, 2, 3, 4, 5],
        [1.0, float('nan')],
        [float('inf')],
    ])
    def test_vector_must_fit(self, generator, params, values):
        generator.build_context(params)
        with pytest.raises(ConfigurationError):
            generator.generate_keys(params, values)

    def test_missing_base_g_bundle(self, params):
        """Engine producing bundles for another baseG is a KeyMismatch"""
        generator = KeyMaterialGenerator(PlaintextSession(produced_base_g=[1 << 17]))
        with pytest.raises(KeyMismatch):
            generator.generate(params, [1, 2, 3, 4])

    def test_expected_indicator_first_occurrence(self, generator, params):
        material = generator.generate(params, [4, 3, 1, 1])
        assert material.expected_indicator() == [0.0, 0.0, 1.0, 0.0]

    def test_short_vector_is_padded_above_maximum(self, generator, params, publisher_session):
        material = generator.generate(params, [3, -1])

        assert material.plaintext == [3.0, -1.0]
        assert material.padded == [3.0, -1.0, 4.0, 4.0]
        assert material.expected_indicator() == [0.0, 1.0]
        assert publisher_session.decrypt(material.key_pair.secret_key,
                                         material.initial_ciphertext, 4) == [3.0, -1.0, 4.0, 4.0]

    def test_pad_vector(self):
        assert pad_vector([2, 2], 4) == [2.0, 2.0, 3.0, 3.0]
        assert pad_vector([5, 1, 7, 0], 4) == [5.0, 1.0, 7.0, 0.0]

    def test_independent_runs(self, params):
        """Two runs give independent key pairs that each decrypt their own data"""
        first_session, second_session = PlaintextSession(), PlaintextSession()
        first = KeyMaterialGenerator(first_session).generate(params, [1, 2, 3, 4])
        second = KeyMaterialGenerator(second_session).generate(params, [5, 6, 7, 8])

        assert first.key_pair.key_id != second.key_pair.key_id
        assert first_session.decrypt(first.key_pair.secret_key, first.initial_ciphertext, 4) == [1, 2, 3, 4]
        assert second_session.decrypt(second.key_pair.secret_key, second.initial_ciphertext, 4) == [5, 6, 7, 8]
        with pytest.raises(EvaluationFailure):
            first_session.decrypt(second.key_pair.secret_key, first.initial_ciphertext, 4)


class TestArtifactCatalog:
    """Tests for the published record set"""

    @pytest.fixture
    def generator(self, publisher_session, security_logger):
        return KeyMaterialGenerator(publisher_session, security_logger)

    @pytest.fixture
    def material(self, generator, params):
        return generator.generate(params, [1, 2, 3, 4])

    def test_records_follow_publish_order(self, generator, material, params):
        names = ArtifactNames()
        records = generator.build_records(material, names)
        assert [r.name for r in records] == names.publisher_names(params.base_g_list)

    def test_bundle_records_carry_base_g(self, generator, material):
        records = {r.name: r for r in generator.build_records(material, ArtifactNames())}
        assert records["262144-refresh-key"].metadata['base_g'] == 1 << 18
        assert records["262144-key-switch-key"].kind == ArtifactKind.KEY_SWITCH_KEY
        assert 'base_g' not in records["refresh-key"].metadata
        assert records["initial-ciphertext"].metadata['vector_size'] == 4
        assert records["comparison-context"].metadata['base_g'] == [1 << 18]

    def test_secret_key_never_published(self, generator, material, security_logger):
        store = MemoryArtifactStore()
        generator.publish(generator.build_records(material, ArtifactNames()), store)

        secret = material.key_pair.secret_key.encode()
        for name in store.names_present():
            assert secret not in store.get(name), f"secret key leaked in {name}"
        assert "secret" not in " ".join(kind.value for kind in ArtifactKind)
        assert security_logger.artifacts_for(PUBLISHER, OperationType.PUBLISH) == \
            ArtifactNames().publisher_names([1 << 18])

    def test_multiple_base_g(self, publisher_session):
        params = ParameterSet(base_g_list=(1 << 14, 1 << 18))
        generator = KeyMaterialGenerator(publisher_session)
        material = generator.generate(params, [2, 1])
        names = [r.name for r in generator.build_records(material, ArtifactNames())]
        assert "16384-refresh-key" in names and "262144-refresh-key" in names

    def test_publish_twice_is_rejected(self, generator, material):
        store = MemoryArtifactStore()
        records = generator.build_records(material, ArtifactNames())
        generator.publish(records, store)
        with pytest.raises(ArtifactOverwrite):
            generator.publish(records, store)


class TestVerifier:
    """Tests for result checking"""

    @pytest.fixture
    def material(self, publisher_session, params):
        return KeyMaterialGenerator(publisher_session).generate(params, [4, 3, 1, 1])

    def test_one_hot_within_tolerance(self, publisher_session, material):
        report = Verifier(publisher_session).check([0.01, -0.02, 0.98, 0.03], material)
        assert report.passed
        assert report.max_error == pytest.approx(0.03)

    def test_one_hot_outside_tolerance(self, publisher_session, material):
        report = Verifier(publisher_session, tolerance=0.05).check([0.0, 0.0, 0.9, 0.0], material)
        assert not report.passed

    def test_non_one_hot_first_marked_slot(self, material):
        params = ParameterSet(one_hot=False)
        material.params = params
        verifier = Verifier(PlaintextSession())
        assert verifier.check([0.1, 0.2, 0.9, 0.8], material).passed
        assert not verifier.check([0.7, 0.2, 0.9, 0.8], material).passed

    def test_result_under_foreign_key(self, publisher_session, material):
        from argmin_he.core.artifact_store import ArtifactRecord
        store = MemoryArtifactStore()
        store.put_record(ArtifactRecord("result-ciphertext", ArtifactKind.CIPHERTEXT,
                                        b"{}", {'key_id': 'someone-else', 'slots': 4}))
        with pytest.raises(ArtifactCorrupt):
            Verifier(publisher_session).verify(store, material)

    def test_wrong_result_fails(self, publisher_session, material):
        from argmin_he.core.artifact_store import ArtifactRecord
        from argmin_he.core.engine import Ciphertext
        key = material.initial_ciphertext.handle['key']
        wrong = Ciphertext(handle={'key': key, 'values': [1.0, 0.0, 0.0, 0.0]}, slots=4)
        store = MemoryArtifactStore()
        store.put_record(ArtifactRecord(
            "result-ciphertext", ArtifactKind.CIPHERTEXT,
            publisher_session.serialize(ArtifactKind.CIPHERTEXT, wrong.handle),
            {'key_id': material.key_pair.key_id, 'slots': 4}
        ))

        with pytest.raises(VerificationFailure) as exc_info:
            Verifier(publisher_session).verify(store, material)
        assert exc_info.value.phase == "VERIFIED"
