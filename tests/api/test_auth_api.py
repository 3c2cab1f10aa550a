from uuid import uuid4


def test_signup_login_me(client) -> None:
    email = f"Me_{uuid4().hex[:8]}@Test.com"
    signup = client.post("/auth/signup", json={"email": email, "password": "StrongPass123"})
    assert signup.status_code == 201

    login = client.post("/auth/login", data={"username": email.lower(), "password": "StrongPass123"})
    assert login.status_code == 200
    headers = {"Authorization": f"Bearer {login.json()['access_token']}"}

    me = client.get("/auth/me", headers=headers)
    assert me.status_code == 200
    body = me.json()
    assert body["email"] == email.lower()
    assert body["plan_tier"] == "free"
    assert body["daily_message_cap"] == 20
    assert body["ai_configured"] is False


def test_duplicate_signup_conflicts(client) -> None:
    payload = {"email": f"dup_{uuid4().hex[:8]}@test.com", "password": "StrongPass123"}
    assert client.post("/auth/signup", json=payload).status_code == 201
    assert client.post("/auth/signup", json=payload).status_code == 409


def test_bad_password_rejected(client, create_user) -> None:
    user = create_user()
    response = client.post("/auth/login", data={"username": user.email, "password": "wrong-password"})
    assert response.status_code == 401


def test_garbage_token_rejected(client) -> None:
    response = client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_ai_config_roundtrip_masks_key(client, auth_token) -> None:
    headers = {"Authorization": f"Bearer {auth_token}"}

    stored = client.get("/auth/ai-config", headers=headers)
    assert stored.status_code == 200
    assert stored.json()["api_key_masked"] == "****...****"

    updated = client.put(
        "/auth/ai-config",
        headers=headers,
        json={"ai_provider": "openai", "ai_model": "gpt-4.1-mini", "ai_api_key": "sk-new-abcdefgh"},
    )
    assert updated.status_code == 200
    assert updated.json()["ai_model"] == "gpt-4.1-mini"
    assert updated.json()["api_key_masked"] == "sk-n...efgh"

    assert client.delete("/auth/ai-config", headers=headers).status_code == 204
    assert client.get("/auth/ai-config", headers=headers).status_code == 404


def test_unsupported_provider_rejected(client, auth_token) -> None:
    response = client.put(
        "/auth/ai-config",
        headers={"Authorization": f"Bearer {auth_token}"},
        json={"ai_provider": "gemini", "ai_model": "gemini-2.0-flash", "ai_api_key": "key-12345678"},
    )
    assert response.status_code == 422


def test_health(client) -> None:
    assert client.get("/health").json() == {"status": "ok"}
