import pytest

from p1bulkconsole import mapper
from p1bulkconsole.errors import MappingError


def test_map_record_trims_and_drops_empty_values():
    record = mapper.mapRecord({" username ": " jdoe ", "email": "jdoe@example.com", "title": "   "})

    assert record == {"username": "jdoe", "email": "jdoe@example.com"}


def test_map_record_skips_cells_without_a_header():
    record = mapper.mapRecord({"username": "jdoe", None: ["extra"], "": "x"})

    assert record == {"username": "jdoe"}


def test_map_record_accepts_email_only():
    record = mapper.mapRecord({"email": "jdoe@example.com"})

    assert record["email"] == "jdoe@example.com"


def test_map_record_without_identifier_raises():
    with pytest.raises(MappingError) as e:
        mapper.mapRecord({"name.given": "Jane"})

    assert e.value.reason == "missing identifier"


def test_map_record_with_bad_email_raises():
    with pytest.raises(MappingError) as e:
        mapper.mapRecord({"username": "jdoe", "email": "not-an-email"})

    assert e.value.reason.startswith("invalid email format")


def test_map_record_user_id_only_needs_accept_user_id():
    with pytest.raises(MappingError):
        mapper.mapRecord({"userId": "abc"})

    assert mapper.mapRecord({"id": "abc"}, acceptUserId=True) == {"userId": "abc"}


def test_map_record_converts_booleans():
    record = mapper.mapRecord({"username": "jdoe", "enabled": False})

    assert record["enabled"] == "false"


def test_record_identifier_prefers_username_then_email():
    assert mapper.recordIdentifier({"username": "jdoe", "email": "j@example.com"}) == "jdoe"
    assert mapper.recordIdentifier({"email": "j@example.com"}) == "j@example.com"
    assert mapper.recordIdentifier({"userId": "abc"}) == "abc"
    assert mapper.recordIdentifier({}, 4) == "user-4"


def test_build_user_payload_nests_dotted_headers_and_aliases():
    record = {
        "username": "jdoe",
        "email": "jdoe@example.com",
        "name.given": "Jane",
        "lastName": "Doe",
        "firstName": "Ignored",
        "primaryPhone": "+15555550100",
        "locality": "Denver",
    }

    user = mapper.buildUserPayload(record, "pop-1")

    assert user["username"] == "jdoe"
    assert user["name"] == {"given": "Jane", "family": "Doe"}
    assert user["population"] == {"id": "pop-1"}
    assert user["enabled"] is True
    assert user["phoneNumbers"] == [{"value": "+15555550100", "type": "work", "primary": True}]
    assert user["addresses"][0]["locality"] == "Denver"
    assert "firstName" not in user
    assert "password" not in user


def test_build_user_payload_population_and_password():
    record = {"username": "jdoe", "populationId": "pop-2", "password": "Secret123!", "enabled": "false"}

    user = mapper.buildUserPayload(record, "pop-1", forcePasswordChange=True)

    assert user["population"] == {"id": "pop-2"}
    assert user["password"] == {"value": "Secret123!", "forceChange": True}
    assert user["enabled"] is False


def test_build_modify_payload_keeps_identifier_out():
    user = mapper.buildModifyPayload({"username": "jdoe", "email": "new@example.com", "title": "Engineer"})

    assert user == {"email": "new@example.com", "title": "Engineer"}


def test_build_modify_payload_by_email_drops_email():
    user = mapper.buildModifyPayload({"email": "jdoe@example.com", "title": "Engineer"})

    assert user == {"title": "Engineer"}


def test_build_modify_payload_by_user_id_can_rename():
    user = mapper.buildModifyPayload({"userId": "abc", "username": "renamed"})

    assert user == {"username": "renamed"}
