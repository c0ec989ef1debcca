from clinigate.inconsistency import detect, detect_from_context, fast_breathing_threshold, merge


def test_red_sign_with_green_priority_is_an_error():
    findings = detect(["unable_to_drink"], "green", age_months=18, vitals={"respiratory_rate": 30})

    assert len(findings) == 1
    assert findings[0].category == "danger_sign_mismatch"
    assert findings[0].field == "unable_to_drink"
    assert findings[0].severity == "error"
    assert "RED" in findings[0].message


def test_red_priority_without_signs_reports_no_danger_sign_findings():
    findings = detect([], "red", age_months=18)

    assert [f for f in findings if f.category == "danger_sign_mismatch"] == []
    assert [f for f in findings if f.category == "missing_data"] == []


def test_yellow_signs_only_flag_green_priority():
    assert detect({"chest_indrawing": True}, "yellow", vitals={"rr": 35}) == []

    findings = detect({"chest_indrawing": True}, "green", vitals={"rr": 35})
    assert [(f.field, f.severity) for f in findings] == [("chest_indrawing", "warning")]


def test_fast_breathing_threshold_depends_on_age_band():
    assert fast_breathing_threshold(1) == (60, "under 2 months")
    assert fast_breathing_threshold(6) == (50, "2-12 months")
    assert fast_breathing_threshold(None) == (40, "12-60 months")

    older = detect([], "green", age_months=18, vitals={"respiratory_rate": 45})
    infant = detect([], "green", age_months=6, vitals={"respiratory_rate": 45})

    assert [f.category for f in older] == ["threshold_exceeded"]
    assert infant == []


def test_contradictory_findings_are_reported():
    findings = detect(
        {"lethargic_or_unconscious": True, "consciousness": "Alert", "unable_to_drink": True, "drinks_normally": True},
        "red",
    )

    assert sorted(f.field for f in findings if f.category == "contradiction") == ["consciousness", "hydration"]


def test_missing_respiratory_rate_is_informational():
    findings = detect(["fever"], "yellow")

    assert [(f.category, f.severity) for f in findings] == [("missing_data", "info")]


def test_unknown_priority_skips_checks():
    assert detect(["convulsions"], "purple") == []
    assert detect(["convulsions"], None) == []


def test_aliases_and_string_findings_are_normalized():
    findings = detect("respiratory distress severe, fever", "yellow", vitals={"RR": 38})

    assert [f.field for f in findings] == ["severe_respiratory_distress"]


def test_context_reader_collects_answers_and_vitals():
    context = {
        "answers": {"unable_to_drink": True},
        "vitals": {"respiratory_rate": 30},
        "triage_priority": "yellow",
        "age_months": "24",
    }

    findings = detect_from_context(context)

    assert [f.field for f in findings] == ["unable_to_drink"]


def test_merge_puts_deterministic_findings_first_and_drops_repeats():
    findings = detect(["unable_to_drink"], "green", vitals={"rr": 30})
    model_items = [findings[0].message.upper(), "Temperature was not rechecked."]

    merged = merge(model_items, findings)

    assert merged == [findings[0].message, "Temperature was not rechecked."]


def test_triage_and_triage_color_keys_are_read_as_the_priority():
    assert [f.field for f in detect_from_context({"triage": "green", "findings": ["unable_to_drink"]})] == ["unable_to_drink"]
    assert [f.field for f in detect_from_context({"triage_color": "Green ", "findings": ["unable_to_drink"]})] == [
        "unable_to_drink"
    ]
    assert detect_from_context({"triage": "red", "findings": ["unable_to_drink"]}) == []
