def _me(client, headers):
    return client.get("/users/me", headers=headers).json()


def _send(client, admin_headers, user_id, title, type="SYSTEM"):
    res = client.post(
        "/notifications",
        json={"user_id": user_id, "type": type, "title": title, "message": f"{title} body"},
        headers=admin_headers,
    )
    assert res.status_code == 201, res.text
    return res.json()


def test_admin_creates_notifications(client, admin_headers, client_headers):
    user_id = _me(client, client_headers)["id"]
    note = _send(client, admin_headers, user_id, "Welcome")
    assert note["read"] is False
    assert note["user_id"] == user_id

    res = client.post(
        "/notifications",
        json={"user_id": user_id, "type": "SYSTEM", "title": "x", "message": "y"},
        headers=client_headers,
    )
    assert res.status_code == 403

    res = client.post(
        "/notifications",
        json={"user_id": 9999, "type": "SYSTEM", "title": "x", "message": "y"},
        headers=admin_headers,
    )
    assert res.status_code == 404


def test_list_filters_and_counts(client, admin_headers, client_headers):
    user_id = _me(client, client_headers)["id"]
    first = _send(client, admin_headers, user_id, "One")
    _send(client, admin_headers, user_id, "Two", type="DELIVERY_REMINDER")
    _send(client, admin_headers, user_id, "Three")

    res = client.patch(f"/notifications/{first['id']}/read", headers=client_headers)
    assert res.status_code == 200
    assert res.json()["read"] is True

    body = client.get("/notifications", headers=client_headers).json()
    assert body["counts"] == {"total": 3, "unread": 2}
    assert [n["title"] for n in body["notifications"]] == ["Three", "Two", "One"]

    unread = client.get("/notifications", params={"unread": "true"}, headers=client_headers).json()
    assert {n["title"] for n in unread["notifications"]} == {"Two", "Three"}
    assert unread["pagination"]["total"] == 2

    typed = client.get("/notifications", params={"type": "DELIVERY_REMINDER"}, headers=client_headers).json()
    assert [n["title"] for n in typed["notifications"]] == ["Two"]

    paged = client.get("/notifications", params={"limit": 1, "offset": 1}, headers=client_headers).json()
    assert [n["title"] for n in paged["notifications"]] == ["Two"]

    assert client.get("/notifications", params={"limit": 101}, headers=client_headers).status_code == 422


def test_mark_read_ownership_and_read_all(client, admin_headers, client_headers, other_client_headers):
    user_id = _me(client, client_headers)["id"]
    note = _send(client, admin_headers, user_id, "Private")
    _send(client, admin_headers, user_id, "Another")

    assert client.patch(f"/notifications/{note['id']}/read", headers=other_client_headers).status_code == 403
    assert client.patch("/notifications/9999/read", headers=client_headers).status_code == 404

    res = client.post("/notifications/read-all", headers=client_headers)
    assert res.status_code == 200
    assert res.json() == {"updated": 2}
    counts = client.get("/notifications", headers=client_headers).json()["counts"]
    assert counts == {"total": 2, "unread": 0}
