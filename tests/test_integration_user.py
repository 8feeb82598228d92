"""Integration tests for the /user profile endpoints."""

import pytest
from fastapi.testclient import TestClient

from zajel_auth import app as app_module

PASSWORD = "TestPassword123"
EMAIL = "profile@example.com"


@pytest.fixture
def client(runtime):
    return TestClient(app_module.app, base_url="https://testserver")


@pytest.fixture
def access_token(client, mailbox):
    client.post(
        "/auth/signup",
        json={"name": "Profile User", "email": EMAIL, "password": PASSWORD, "username": "profile.user"},
    )
    code = mailbox.last("verification", EMAIL)["code"]
    response = client.post("/auth/verify-email", json={"email": EMAIL, "verificationCode": code})
    return response.json()["accessToken"]


@pytest.fixture
def auth(access_token):
    return {"Authorization": f"Bearer {access_token}"}


def test_me_requires_authentication(client):
    response = client.get("/user/me")
    assert response.status_code == 401
    assert response.json()["message"] == "Authentication required."


def test_me_accepts_access_cookie(client, access_token):
    client.cookies.set("accessToken", access_token)
    response = client.get("/user/me")
    assert response.status_code == 200


def test_me_hides_secrets(client, auth):
    response = client.get("/user/me", headers=auth)
    assert response.status_code == 200
    body = response.json()
    assert body["email"] == EMAIL
    assert body["username"] == "profile.user"
    assert body["isVerified"] is True
    for hidden in ("password", "refresh_token", "refreshToken", "verification_code_hash"):
        assert hidden not in body


def test_check_username(client, access_token):
    taken = client.get("/auth/check-username", params={"username": "profile.user"})
    assert taken.json() == {"available": False, "message": "Username is already taken."}
    free = client.get("/auth/check-username", params={"username": "someone.else"})
    assert free.json()["available"] is True
    invalid = client.get("/auth/check-username", params={"username": "ab"})
    assert invalid.status_code == 400


def test_check_username_own_name_available(client, runtime, access_token):
    owner = runtime.store.get_identity_by_email(EMAIL)
    response = client.get(
        "/auth/check-username", params={"username": "profile.user", "userId": owner.id}
    )
    assert response.json()["available"] is True


def test_update_name_and_username(client, auth):
    response = client.put(
        "/user/update", json={"name": "Renamed User", "username": "renamed.user"}, headers=auth
    )
    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "User updated successfully."
    assert body["user"]["name"] == "Renamed User"
    assert body["user"]["username"] == "renamed.user"
    assert body["requiresVerification"] is False


def test_update_username_conflict(client, auth, mailbox):
    client.post(
        "/auth/signup",
        json={"name": "Other", "email": "other@example.com", "password": PASSWORD, "username": "taken.name"},
    )
    response = client.put("/user/update", json={"username": "taken.name"}, headers=auth)
    assert response.status_code == 409


def test_update_phone_requires_verification(client, auth, runtime):
    owner = runtime.store.get_identity_by_email(EMAIL)
    runtime.store.update_identity(owner.id, phone_number="+966501111111", phone_verified=True)
    response = client.put("/user/update", json={"phoneNumber": "+966502222222"}, headers=auth)
    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Phone number updated. Please verify the new number."
    assert body["requiresVerification"] is True
    assert body["user"]["pendingPhoneNumber"] == "+966502222222"
    assert body["user"]["phoneNumber"] is None
    assert body["user"]["isPhoneVerified"] is False


def test_update_password(client, auth):
    wrong = client.put(
        "/user/update-password",
        json={"oldPassword": "not-it", "newPassword": "NewPassword456"},
        headers=auth,
    )
    assert wrong.status_code == 400
    assert wrong.json()["message"] == "Old password is incorrect."

    ok = client.put(
        "/user/update-password",
        json={"oldPassword": PASSWORD, "newPassword": "NewPassword456"},
        headers=auth,
    )
    assert ok.status_code == 200
    assert ok.json() == {"message": "Password updated successfully."}

    login = client.post("/auth/login", json={"email": EMAIL, "password": "NewPassword456"})
    assert login.status_code == 200


def test_email_change_flow(client, auth, mailbox):
    requested = client.post(
        "/user/request-email-update", json={"newEmail": "fresh@example.com"}, headers=auth
    )
    assert requested.status_code == 200
    code = mailbox.last("email_change", "fresh@example.com")["code"]

    wrong_password = client.post(
        "/user/verify-email-update",
        json={"verificationCode": code, "password": "not-it"},
        headers=auth,
    )
    assert wrong_password.status_code == 400
    assert wrong_password.json()["message"] == "Incorrect password."

    confirmed = client.post(
        "/user/verify-email-update",
        json={"verificationCode": code, "password": PASSWORD},
        headers=auth,
    )
    assert confirmed.status_code == 200
    assert confirmed.json() == {"message": "Email updated successfully."}
    assert client.get("/user/me", headers=auth).json()["email"] == "fresh@example.com"


def test_email_change_rejects_same_and_invalid(client, auth):
    same = client.post("/user/request-email-update", json={"newEmail": EMAIL}, headers=auth)
    assert same.status_code == 400
    assert same.json()["message"] == "Invalid new email."
    invalid = client.post("/user/request-email-update", json={"newEmail": "nope"}, headers=auth)
    assert invalid.status_code == 400
    assert invalid.json()["message"] == "Invalid new email."


def test_verify_email_update_without_request(client, auth):
    response = client.post(
        "/user/verify-email-update",
        json={"verificationCode": "123456", "password": PASSWORD},
        headers=auth,
    )
    assert response.status_code == 400
    assert response.json()["message"] == "No email change in progress."


def test_delete_account(client, auth, mailbox, runtime):
    unconfirmed = client.request(
        "DELETE",
        "/user/delete-account",
        json={"password": PASSWORD, "confirmation": "delete"},
        headers=auth,
    )
    assert unconfirmed.status_code == 400
    assert unconfirmed.json()["message"] == "You must type 'DELETE' to confirm."

    wrong_password = client.request(
        "DELETE",
        "/user/delete-account",
        json={"password": "not-it", "confirmation": "DELETE"},
        headers=auth,
    )
    assert wrong_password.status_code == 400

    deleted = client.request(
        "DELETE",
        "/user/delete-account",
        json={"password": PASSWORD, "confirmation": "DELETE"},
        headers=auth,
    )
    assert deleted.status_code == 200
    assert deleted.json() == {"message": "Account deleted successfully."}
    assert client.cookies.get("refreshToken") is None
    assert runtime.store.get_identity_by_email(EMAIL) is None
    assert mailbox.last("account_deleted", EMAIL)

    after = client.get("/user/me", headers=auth)
    assert after.status_code == 401
