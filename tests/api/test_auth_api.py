import re


def test_register_returns_token_and_clinical_id(client) -> None:
    response = client.post(
        "/auth/register",
        json={"name": "Dr Who", "email": "dr.who@example.com", "password": "Tardis12", "confirmPassword": "Tardis12"},
    )
    assert response.status_code == 201
    body = response.json()
    assert re.fullmatch(r"NP-[A-Z0-9]{5}", body["clinicalId"])
    assert body["tokenType"] == "bearer"
    assert body["session"]["email"] == "dr.who@example.com"

    me = client.get("/auth/session", headers={"Authorization": f"Bearer {body['accessToken']}"})
    assert me.status_code == 200
    assert me.json()["session"]["clinicalId"] == body["clinicalId"]
    assert me.json()["state"] == "registered"
    # Welcome mail is delivered in the background right after registration.
    assert me.json()["unreadCount"] == 1


def test_register_validation_errors(client, register_user) -> None:
    register_user(email="dr.who@example.com")

    duplicate = client.post(
        "/auth/register",
        json={"name": "X", "email": "dr.who@example.com", "password": "Tardis12", "confirmPassword": "Tardis12"},
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"] == "This email is already linked to a Clinical Registry. Please sign in."

    mismatch = client.post(
        "/auth/register",
        json={"name": "Amy", "email": "amy@example.com", "password": "Pond1234", "confirmPassword": "Pond4321"},
    )
    assert mismatch.status_code == 400
    assert mismatch.json()["detail"] == "Security Passkeys do not match."

    short = client.post(
        "/auth/register",
        json={"name": "Amy", "email": "amy@example.com", "password": "abc", "confirmPassword": "abc"},
    )
    assert short.status_code == 400
    assert short.json()["detail"] == "Passkey must be at least 6 characters."


def test_login_and_bad_credentials(client, register_user) -> None:
    user = register_user()
    client.post("/auth/logout", headers={"Authorization": f"Bearer {user['accessToken']}"})

    bad = client.post("/auth/login", data={"username": user["email"], "password": "WrongPass1"})
    assert bad.status_code == 401
    assert bad.json()["detail"] == "Invalid Clinical Credentials. Access Denied."

    login = client.post("/auth/login", data={"username": user["email"].upper(), "password": user["password"]})
    assert login.status_code == 200
    token = login.json()["accessToken"]
    me = client.get("/auth/session", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["state"] == "logged_in"


def test_session_requires_current_token(client, register_user) -> None:
    assert client.get("/auth/session").status_code == 401
    assert client.get("/auth/session", headers={"Authorization": "Bearer nonsense"}).status_code == 401

    first = register_user()
    second = register_user()
    # Only one session slot exists; the older token is no longer honored.
    stale = client.get("/auth/session", headers={"Authorization": f"Bearer {first['accessToken']}"})
    assert stale.status_code == 401
    fresh = client.get("/auth/session", headers={"Authorization": f"Bearer {second['accessToken']}"})
    assert fresh.status_code == 200


def test_logout_invalidates_session(client, auth_headers) -> None:
    assert client.post("/auth/logout", headers=auth_headers).status_code == 204
    assert client.get("/auth/session", headers=auth_headers).status_code == 401


def test_password_reset_endpoints(client, register_user) -> None:
    user = register_user()

    missing = client.post("/auth/password-reset/request", json={"email": "ghost@example.com"})
    assert missing.status_code == 404
    assert missing.json()["detail"] == "Email identifier not found in clinical database."

    issued = client.post("/auth/password-reset/request", json={"email": user["email"]})
    assert issued.status_code == 200
    assert issued.json()["state"] == "reset_issued"

    mismatch = client.post(
        "/auth/password-reset/complete",
        json={"email": user["email"], "password": "NewPass99", "confirmPassword": "NewPass98"},
    )
    assert mismatch.status_code == 400

    done = client.post(
        "/auth/password-reset/complete",
        json={"email": user["email"], "password": "NewPass99", "confirmPassword": "NewPass99"},
    )
    assert done.status_code == 200
    assert done.json()["notice"] == "Passkey updated. Please log in with new credentials."

    old = client.post("/auth/login", data={"username": user["email"], "password": user["password"]})
    assert old.status_code == 401
    new = client.post("/auth/login", data={"username": user["email"], "password": "NewPass99"})
    assert new.status_code == 200


def test_logout_without_current_token_keeps_session(client, register_user) -> None:
    first = register_user()
    second = register_user()
    headers = {"Authorization": f"Bearer {second['accessToken']}"}

    assert client.post("/auth/logout").status_code == 204
    assert client.post("/auth/logout", headers={"Authorization": "Bearer nonsense"}).status_code == 204
    stale = client.post("/auth/logout", headers={"Authorization": f"Bearer {first['accessToken']}"})
    assert stale.status_code == 204
    assert client.get("/auth/session", headers=headers).status_code == 200


def test_password_reset_complete_requires_request(client, register_user) -> None:
    user = register_user()

    hijack = client.post(
        "/auth/password-reset/complete",
        json={"email": user["email"], "password": "Hijacked9", "confirmPassword": "Hijacked9"},
    )
    assert hijack.status_code == 400
    assert hijack.json()["detail"] == "No passkey reset is pending for this email. Request a new reset link."

    login = client.post("/auth/login", data={"username": user["email"], "password": user["password"]})
    assert login.status_code == 200
