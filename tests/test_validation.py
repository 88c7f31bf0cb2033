def _payload(**overrides):
    payload = {
        "items": [{"id": "a", "aspect_ratio": 1.0}, {"id": "b", "aspect_ratio": 1.5}],
        "container_width": 600,
        "target_row_height": 150,
    }
    payload.update(overrides)
    return payload


def test_pack_requires_container_width(client):
    payload = _payload()
    del payload["container_width"]
    resp = client.post('/api/layout/pack', json=payload)
    assert resp.status_code == 422


def test_pack_rejects_non_positive_container_width(client):
    resp = client.post('/api/layout/pack', json=_payload(container_width=0))
    assert resp.status_code == 422
    resp = client.post('/api/layout/pack', json=_payload(container_width=-100))
    assert resp.status_code == 422


def test_pack_rejects_bad_options(client):
    assert client.post('/api/layout/pack', json=_payload(target_row_height=0)).status_code == 422
    assert client.post('/api/layout/pack', json=_payload(gutter=-2)).status_code == 422
    assert client.post('/api/layout/pack', json=_payload(last_row_cap_multiplier=0)).status_code == 422
    assert client.post('/api/layout/pack', json=_payload(row_break="lookahead")).status_code == 422


def test_pack_rejects_too_many_items(client, monkeypatch):
    import server

    monkeypatch.setattr(server, "MAX_ITEMS", 1)
    resp = client.post('/api/layout/pack', json=_payload())
    assert resp.status_code == 400
    assert 'Maximum 1 items allowed' in resp.text


def test_pack_rejects_oversized_container(client, monkeypatch):
    import server

    monkeypatch.setattr(server, "MAX_CONTAINER_WIDTH", 500)
    resp = client.post('/api/layout/pack', json=_payload(container_width=600))
    assert resp.status_code == 400


def test_bad_item_dimensions_fall_back_instead_of_failing(client):
    items = [
        {"id": "zero", "width": 0, "height": 0},
        {"id": "neg", "width": -50, "height": 20},
        {"id": "none"},
        {"id": "string-width", "width": "n/a", "height": 10},
        {"id": "string-ratio", "aspect_ratio": "wide"},
    ]
    resp = client.post('/api/layout/pack', json=_payload(items=items))
    assert resp.status_code == 200
    assert [p["aspect_ratio"] for p in resp.json()["items"]] == [1.0, 1.0, 1.0, 1.0, 1.0]


def test_preview_rejects_invalid_color(client):
    resp = client.post('/api/layout/preview', json=_payload(background_color="white"))
    assert resp.status_code == 422
    assert 'Invalid hex color format' in resp.text


def test_preview_rejects_oversized_canvas(client, monkeypatch):
    import server

    monkeypatch.setattr(server, "MAX_CANVAS_PIXELS", 1000)
    resp = client.post('/api/layout/preview', json=_payload())
    assert resp.status_code == 400
    assert 'Canvas too large' in resp.text


def test_rate_limit(client, monkeypatch):
    import server

    monkeypatch.setattr(server, "RATE_LIMIT_REQUESTS", 2)
    assert client.get('/').status_code == 200
    assert client.get('/').status_code == 200
    resp = client.get('/', headers={"X-Request-ID": "req-429"})
    assert resp.status_code == 429
    assert resp.json()["request_id"] == "req-429"


def test_caller_ids_of_any_type_pass_through(client):
    items = [{"id": 7, "aspect_ratio": 1.0}, {"id": None, "type": 3, "aspect_ratio": 2.0}]
    resp = client.post('/api/layout/pack', json=_payload(items=items))
    assert resp.status_code == 200
    placed = resp.json()["items"]
    assert placed[0]["id"] == 7
    assert placed[1]["id"] is None
    assert placed[1]["type"] == 3


def test_preview_handler_runs_in_threadpool():
    import inspect

    import server

    # FastAPI only offloads plain functions
    assert not inspect.iscoroutinefunction(server.preview_layout)
