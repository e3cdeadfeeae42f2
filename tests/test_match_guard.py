from loupe.match_guard import filter_known_ids, normalize_id, scopes_compatible, validate_match_proposal


def _proposal(matched, confidence: float = 0.9, scope: str = "element") -> dict:
    return {
        "matched_change_id": matched,
        "match_confidence": confidence,
        "match_rationale": "same headline",
        "scope": scope,
    }


def test_no_claim_means_new_record() -> None:
    result = validate_match_proposal(_proposal(None), [1, 2])
    assert result.accepted is False
    assert result.rejection_reason is None


def test_claim_outside_candidate_set_is_rejected() -> None:
    result = validate_match_proposal(_proposal("999"), [1, 2])
    assert result.accepted is False
    assert result.matched_change_id is None
    assert result.rejection_reason == "not_in_candidate_set"


def test_garbage_id_is_rejected() -> None:
    assert validate_match_proposal(_proposal("change-abc"), [1]).rejection_reason == "not_in_candidate_set"
    assert validate_match_proposal(_proposal(True), [1]).rejection_reason == "not_in_candidate_set"


def test_empty_candidate_set_rejects_every_claim() -> None:
    assert validate_match_proposal(_proposal(1), []).rejection_reason == "not_in_candidate_set"


def test_known_id_with_confidence_is_accepted() -> None:
    result = validate_match_proposal(_proposal("2", 0.7), [1, 2], {2: "section"})
    assert result.accepted is True
    assert result.matched_change_id == 2


def test_low_confidence_is_rejected() -> None:
    assert validate_match_proposal(_proposal(2, 0.69), [2]).rejection_reason == "low_confidence"
    assert validate_match_proposal(_proposal(2, 0.2), [2], min_confidence=0.1).accepted


def test_page_scope_is_compatible_with_everything() -> None:
    assert scopes_compatible("page", "element")
    assert scopes_compatible("section", "element")
    assert scopes_compatible(None, None)


def test_normalize_id() -> None:
    assert normalize_id(" 42 ") == 42
    assert normalize_id(7) == 7
    assert normalize_id("") is None
    assert normalize_id(False) is None


def test_filter_known_ids_drops_invented_and_duplicates() -> None:
    assert filter_known_ids(["3", 1, "x", 3, 99], [1, 3]) == [3, 1]
