"""
HTTP API tests.

Tests:
1.     Health check
2-3.   Units endpoints
4-8.   Formula endpoints (evaluate, typed 400, validate, analyze, suggest)
9-11.  Module endpoints (validate, preview, output name)
12-16. Workspace endpoints (calculate, links, line item, totals)
"""


def _catalog_payload(materials, labor, functions):
    return {
        "materials": [m.model_dump(mode="json") for m in materials],
        "labor": [l.model_dump(mode="json") for l in labor],
        "functions": [f.model_dump(mode="json") for f in functions],
    }


def _workspace_payload(wall_module, floor_module):
    return {
        "modules": [wall_module.model_dump(mode="json"), floor_module.model_dump(mode="json")],
        "instances": [
            {"id": "w1", "module_id": "wall", "field_values": {"width": 4, "height": 2}},
            {
                "id": "f1",
                "module_id": "floor",
                "field_values": {"width": 1, "height": 1},
                "field_links": {"width": {"target_instance_id": "w1", "target_variable_name": "width"}},
            },
        ],
    }


# ============================================================
# 1. Health
# ============================================================

def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


# ============================================================
# 2-3. Units
# ============================================================

def test_list_and_convert_units(client):
    data = client.get("/api/units").json()
    assert "length" in data["categories"]
    assert {"key": "mm", "category": "length", "symbol": "mm"} in data["units"]

    response = client.post("/api/units/convert", json={"value": 1.5, "from_unit": "m", "to_unit": "mm"})
    assert response.json()["value"] == 1500
    response = client.post("/api/units/convert", json={"value": 1, "from_unit": "m", "to_unit": "kg"})
    assert response.status_code == 400


def test_normalize_units(client):
    response = client.post("/api/units/normalize", json={"value": 2400, "unit_symbol": "mm"})
    assert response.json() == {"value": 2.4, "unit_symbol": "mm", "category": "length"}
    response = client.post("/api/units/normalize", json={"value": 2.4, "unit_symbol": "mm", "to_display": True})
    assert abs(response.json()["value"] - 2400) < 1e-9
    assert client.post("/api/units/normalize", json={"value": 1, "unit_symbol": "furlong"}).status_code == 400


# ============================================================
# 4-8. Formulas
# ============================================================

def test_evaluate_formula(client, materials, labor, functions):
    payload = _catalog_payload(materials, labor, functions)
    payload.update(formula="m2(width, height) * lumber_price", variables={"width": 3, "height": 2})
    response = client.post("/api/formulas/evaluate", json=payload)
    assert response.status_code == 200
    assert response.json() == {"result": 60}


def test_evaluate_failure_is_typed_400(client):
    response = client.post("/api/formulas/evaluate", json={"formula": "width / 0", "variables": {"width": 2}})
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["kind"] == "EvaluationError"
    assert detail["subject"] == "width / 0"

    response = client.post("/api/formulas/evaluate", json={"formula": "width *"})
    assert response.json()["detail"]["kind"] == "SyntaxError"


def test_validate_formula(client, wall_module):
    fields = [f.model_dump(mode="json") for f in wall_module.fields]
    response = client.post("/api/formulas/validate", json={"formula": "widht * 2", "fields": fields})
    assert response.status_code == 200
    data = response.json()
    assert data["valid"] is False
    assert data["error_kind"] == "UnknownVariable"
    assert "width" in data["suggestions"]


def test_analyze_formula(client, wall_module):
    payload = {
        "formula": "width * out.area + nope",
        "fields": [f.model_dump(mode="json") for f in wall_module.fields],
        "computed_outputs": [o.model_dump(mode="json") for o in wall_module.computed_outputs],
    }
    data = client.post("/api/formulas/analyze", json=payload).json()
    assert data["variables"] == ["width"]
    assert data["computed_outputs"] == ["out.area"]
    assert data["unknown_variables"] == ["nope"]


def test_suggest(client, wall_module):
    payload = {"word": "he", "fields": [f.model_dump(mode="json") for f in wall_module.fields]}
    data = client.post("/api/formulas/suggest", json=payload).json()
    assert data["suggestions"][0] == "height"


# ============================================================
# 9-11. Modules
# ============================================================

def test_validate_module(client, wall_module, materials, labor, functions):
    payload = _catalog_payload(materials, labor, functions)
    payload["module"] = wall_module.model_dump(mode="json")
    data = client.post("/api/modules/validate", json=payload).json()
    assert data["valid"] is True


def test_preview_module(client, wall_module):
    payload = {"module": wall_module.model_dump(mode="json"), "field_values": {"width": 4, "height": 2}}
    data = client.post("/api/modules/preview", json=payload).json()
    assert data["cost"] == 56
    assert data["computed_values"] == {"out.area": 8, "out.cost": 40}

    payload["field_values"] = {"height": 2}
    data = client.post("/api/modules/preview", json=payload).json()
    assert data["cost"] is None
    assert data["error"]["kind"] == "MissingRequiredInput"


def test_output_name(client, wall_module):
    payload = {"label": "Area", "module": wall_module.model_dump(mode="json")}
    data = client.post("/api/modules/output-name", json=payload).json()
    assert data == {"variable_name": "area_1", "valid": True, "error": None}


# ============================================================
# 12-16. Workspace
# ============================================================

def test_calculate_workspace(client, wall_module, floor_module):
    data = client.post("/api/workspace/calculate", json=_workspace_payload(wall_module, floor_module)).json()
    assert data["costs"]["w1"]["cost"] == 56
    assert data["costs"]["f1"]["cost"] == 12
    assert [i["calculated_cost"] for i in data["instances"]] == [56, 12]
    assert data["broken_links"] == []


def test_check_link(client, wall_module, floor_module):
    payload = _workspace_payload(wall_module, floor_module)
    payload.update(instance_id="w1", field_name="width", target_instance_id="f1", target_variable_name="width")
    data = client.post("/api/workspace/links/check", json=payload).json()
    assert data["valid"] is False
    assert data["error"].startswith("Circular reference detected")
    assert data["error_kind"] == "IncompatibleLink"


def test_link_options(client, wall_module, floor_module):
    payload = _workspace_payload(wall_module, floor_module)
    payload.update(instance_id="f1", field_name="width")
    data = client.post("/api/workspace/links/options", json=payload).json()
    assert data["linked"] is True
    assert data["broken"] is False
    assert data["display_name"] == "Wall — Width"
    assert "w1.height" in [o["value"] for o in data["options"]]

    payload["instance_id"] = "missing"
    assert client.post("/api/workspace/links/options", json=payload).status_code == 404


def test_line_item(client, wall_module, floor_module):
    payload = _workspace_payload(wall_module, floor_module)
    payload["instance_id"] = "w1"
    data = client.post("/api/workspace/line-item", json=payload).json()
    assert data["cost"] == 56
    assert data["field_summary"] == "Width: 4, Height: 2, Paint: "

    payload["instances"][0]["field_values"] = {"height": 2}
    response = client.post("/api/workspace/line-item", json=payload)
    assert response.status_code == 400
    assert response.json()["detail"]["kind"] == "MissingRequiredInput"


def test_totals(client):
    payload = {
        "line_items": [
            {"id": "a", "module_id": "wall", "module_name": "Wall", "cost": 60},
            {"id": "b", "module_id": "floor", "module_name": "Floor", "cost": 40},
        ],
        "markup_percent": 10,
        "tax_rate": 0.1,
    }
    data = client.post("/api/workspace/totals", json=payload).json()
    assert data["subtotal"] == 100
    assert data["total"] == 121
