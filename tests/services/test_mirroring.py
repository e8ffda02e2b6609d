"""
Tests for mirror link validation.
"""

from billing_kernel.services.mirroring import NullMirrorService, validate_mirror_link


class TestValidateMirrorLink:
    def test_valid_link(self, repo, store, make_contract):
        original = make_contract()
        mirror = make_contract(is_mirror="true", origin_contract_id=original)
        store.update_contract(original, {"mirror_contract_id": mirror})

        found = validate_mirror_link(repo, repo.get_contract(original))

        assert found is not None
        assert found.id == mirror

    def test_no_link(self, repo, make_contract):
        assert validate_mirror_link(repo, repo.get_contract(make_contract())) is None

    def test_target_not_flagged_as_mirror(self, repo, store, make_contract, captured_logs):
        original = make_contract()
        other = make_contract(origin_contract_id=original)
        store.update_contract(original, {"mirror_contract_id": other})
        assert validate_mirror_link(repo, repo.get_contract(original)) is None
        assert any(r["message"] == "mirror_link_rejected" for r in captured_logs())

    def test_one_directional_link(self, repo, store, make_contract):
        original = make_contract()
        mirror = make_contract(is_mirror="true", origin_contract_id="somebody-else")
        store.update_contract(original, {"mirror_contract_id": mirror})
        assert validate_mirror_link(repo, repo.get_contract(original)) is None

    def test_dangling_link(self, repo, make_contract, captured_logs):
        original = make_contract(mirror_contract_id="deleted-contract")
        assert validate_mirror_link(repo, repo.get_contract(original)) is None
        assert any(r["message"] == "mirror_link_dangling" for r in captured_logs())

    def test_mirror_itself_is_never_an_original(self, repo, make_contract):
        cid = make_contract(is_mirror="true", mirror_contract_id="x")
        assert validate_mirror_link(repo, repo.get_contract(cid)) is None


class TestNullMirrorService:
    def test_produces_nothing(self, repo, make_contract):
        contract = repo.get_contract(make_contract())
        assert NullMirrorService().mirror(contract, []) is None
