import json

import pytest

from finance_assistant.extraction import DocumentExtractor, ExtractionError, clean_amount, strip_code_fences


def document(name, data, mime_type="image/jpeg"):
    return {"name": name, "mime_type": mime_type, "data": data}


def test_missing_api_key_raises(monkeypatch):
    monkeypatch.delenv("GOOGLE_GENAI_API_KEY", raising=False)
    with pytest.raises(ExtractionError, match="API key not configured"):
        DocumentExtractor(api_key=None)


def test_strip_code_fences_and_clean_amount():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert clean_amount("£12.50") == 12.5
    assert clean_amount(3) == 3.0
    assert clean_amount("") is None
    assert clean_amount("n/a") is None


def test_extract_receipts_handles_fences_fallbacks_and_failures(gemini, extractor):
    gemini.replies[b"ok"] = '```json\n{"description": "Pret", "date": "2025-02-01", "amount": "£4.20"}\n```'
    gemini.replies[b"blank"] = json.dumps({"description": "", "date": "", "amount": None})
    gemini.replies[b"garbage"] = "not json at all"
    gemini.replies[b"boom"] = RuntimeError("quota exceeded")

    results = extractor.extract_receipts(
        [
            document("receipts/ok.jpg", b"ok"),
            document("blank.png", b"blank", "image/png"),
            document("garbage.pdf", b"garbage", "application/pdf"),
            document("boom.jpg", b"boom"),
        ]
    )

    assert results[0] == {"file_name": "ok.jpg", "description": "Pret", "date": "2025-02-01", "amount": 4.2}
    assert results[1] == {"file_name": "blank.png", "description": "blank.png", "date": "N/A", "amount": 0}
    assert results[2] == {"file_name": "garbage.pdf", "description": "garbage.pdf", "date": "Error", "amount": 0}
    assert results[3] == {"file_name": "boom.jpg", "description": "Error reading boom.jpg", "date": "Error", "amount": 0}

    first_call = gemini.calls[0]["contents"]
    assert first_call[1] == {"mime_type": "image/jpeg", "data": b"ok"}
    assert gemini.models[0]["generation_config"]["temperature"] == 0.1


def test_extract_payslips_year_to_date_only_when_complete(gemini, extractor):
    gemini.replies[b"full"] = json.dumps(
        {
            "payDate": "2024-05-28",
            "netPay": "2,450.10",
            "yearToDate": {
                "totalTaxablePay": 6000,
                "totalTaxableNIPay": 5900,
                "totalPAYETax": 0,
                "totalNI": "310.20",
            },
        }
    )
    gemini.replies[b"partial"] = json.dumps(
        {"payDate": "2024-06-28", "netPay": 2400, "yearToDate": {"totalTaxablePay": 0, "totalTaxableNIPay": 10}}
    )
    gemini.replies[b"nopay"] = json.dumps({"payDate": "2024-07-28"})

    full, partial, nopay = extractor.extract_payslips(
        [document("full.pdf", b"full"), document("partial.pdf", b"partial"), document("nopay.pdf", b"nopay")]
    )

    assert full["net_pay"] == 2450.1
    assert full["year_to_date"] == {
        "total_taxable_pay": 6000.0,
        "total_taxable_ni_pay": 5900.0,
        "total_paye_tax": 0.0,
        "total_ni": 310.2,
    }
    assert partial == {"file_name": "partial.pdf", "pay_date": "2024-06-28", "net_pay": 2400.0}
    assert nopay == {"file_name": "nopay.pdf", "pay_date": "Error", "net_pay": 0}


def test_summary_and_welcome_parse_json(gemini, extractor):
    gemini.text_reply = '```json\n{"score": 7, "summary": "Solid.", "recommendations": ["a", "b", "c"]}\n```'
    result = extractor.summarize_finances([{"name": "SIPP", "amount": 1}], [], [])
    assert result["score"] == 7
    assert '"SIPP"' in gemini.calls[-1]["contents"]

    gemini.text_reply = '{"message": "Welcome Sam"}'
    payslips = [{"pay_date": f"2025-0{i}-28", "net_pay": i} for i in range(1, 6)]
    assert extractor.welcome_message(payslips, "Sam") == {"message": "Welcome Sam"}
    prompt = gemini.calls[-1]["contents"]
    assert "The user's name is Sam." in prompt
    assert "2025-03-28" in prompt
    assert "2025-04-28" not in prompt


def test_summary_invalid_json_raises(gemini, extractor):
    gemini.text_reply = "I cannot help with that"
    with pytest.raises(ExtractionError):
        extractor.summarize_finances([], [], [])


def test_chat_maps_roles_and_sets_system_instruction(gemini, extractor):
    gemini.text_reply = "Your pension is on track."
    text = extractor.chat(
        [
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello"},
            {"role": "user", "content": "How is my pension?"},
        ],
        {"pensions": [{"name": "Workplace", "amount": 1000}], "taxReturns": []},
    )

    assert text == "Your pension is on track."
    call = gemini.calls[-1]
    assert [part["role"] for part in call["contents"]] == ["user", "model", "user"]
    assert call["contents"][-1]["parts"] == ["How is my pension?"]
    assert "Workplace" in call["model"]["system_instruction"]


def test_chat_requires_messages(extractor):
    with pytest.raises(ExtractionError):
        extractor.chat([], {})
