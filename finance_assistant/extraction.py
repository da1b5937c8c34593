"""Gemini-backed document understanding.

Receipts and payslips are sent inline with their MIME type; the model is asked
for raw JSON which is cleaned up and normalized here. A failure on one file
never aborts a batch: it becomes an error row instead.
"""

import json
import logging
import os
import re

import google.generativeai as genai


logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.0-flash"

RECEIPT_PROMPT = """
Extract the following from this receipt:
1) Description (vendor/item)
2) Date (YYYY-MM-DD or N/A)
3) Total Amount (Number only. Assume GBP. Do not include currency symbol in the output number)

Return ONLY raw JSON: { "description": "...", "date": "...", "amount": 0.00 }
"""

PAYSLIP_PROMPT = """
Extract the following financial information from this payslip:

1) Pay Date (in YYYY-MM-DD format) - required
2) Net Payment / Total Payment (the final take-home amount after all deductions) - required

YEAR TO DATE SECTION (usually found in bottom right box of the payslip):
3) Total Taxable Pay (Year to Date) - required
4) Total Taxable NI Pay (Year to Date) - required
5) Total PAYE Income Tax (Year to Date) - required
6) Total National Insurance (Year to Date) - required

IMPORTANT:
- All amounts should be numbers only without currency symbols
- Assume GBP currency
- If Year to Date values are not found, omit the yearToDate object entirely

Return ONLY raw JSON in this exact format:
{
  "payDate": "YYYY-MM-DD",
  "netPay": 0.00,
  "yearToDate": {
    "totalTaxablePay": 0.00,
    "totalTaxableNIPay": 0.00,
    "totalPAYETax": 0.00,
    "totalNI": 0.00
  }
}
"""

SUMMARY_PROMPT = """
As a professional financial advisor, analyze the following financial data and provide a concise summary and strategic recommendations.

Pensions:
{pensions}

Financial Year Summaries (Year-to-Date Tax and Earnings):
{financial_years}

Bank Accounts:
{bank_accounts}

Please provide:
1. A brief "Financial Health Score" (out of 10).
2. A one-sentence summary of the current financial status.
3. Three key recommendations for improvement (e.g., tax efficiency, savings rate, pension consolidation).

Return the response in raw JSON format:
{{
  "score": number,
  "summary": "...",
  "recommendations": ["...", "...", "..."]
}}
"""

WELCOME_PROMPT = """
You are a helpful personal finance AI assistant.
The user's name is {name}.
Analyze the following recent payslip data and provide a warm, professional welcome message.
The message should start with "Welcome {name}, do you want to know anything about your finances?" or something very similar.
Follow this with a very brief (1-2 sentences) high-level summary of their recent revenue/earnings based on the provided payslips.

Recent Payslips data:
{payslips}

Return the response in raw JSON format:
{{
  "message": "..."
}}
"""

CHAT_INSTRUCTION = """You are a professional financial advisor assistant.
You have access to the user's financial data.

Current Financial Context:
Pensions: {pensions}
Bank Accounts: {bank_accounts}
Financial Year Summaries: {financial_years}
Tax Returns: {tax_returns}

Use this data to answer the user's questions accurately and provide strategic advice.
Be concise, professional, and helpful.
If the user asks questions not related to their finances, politely guide them back to financial topics."""


class ExtractionError(RuntimeError):
    """Raised when the AI service is unavailable or returns unusable output."""


def strip_code_fences(text):
    return re.sub(r"```json|```", "", text or "").strip()


def clean_amount(value):
    """Turn a model-supplied amount into a float, or None when it carries no number."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = re.sub(r"[^0-9.-]+", "", value)
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None


def _to_json(value):
    return json.dumps(value if value is not None else [], indent=2, default=str)


class DocumentExtractor:
    """Thin wrapper around a Gemini generative model.

    ``model_factory`` builds models with the same keyword arguments as
    ``genai.GenerativeModel``; it defaults to that class once the API key has
    been configured.
    """

    def __init__(self, api_key=None, model_name=DEFAULT_MODEL, model_factory=None, temperature=0.1):
        if model_factory is None:
            api_key = api_key or os.environ.get("GOOGLE_GENAI_API_KEY")
            if not api_key:
                raise ExtractionError("API key not configured")
            genai.configure(api_key=api_key)
            model_factory = genai.GenerativeModel

        self.model_name = model_name
        self._model_factory = model_factory
        self._generation_config = {"temperature": temperature}
        self._model = model_factory(model_name=model_name, generation_config=self._generation_config)

    def _generate_text(self, contents, model=None):
        response = (model or self._model).generate_content(contents)
        return response.text or ""

    def _generate_json(self, contents):
        text = strip_code_fences(self._generate_text(contents))
        try:
            return json.loads(text)
        except ValueError as exc:
            raise ExtractionError(f"Model returned invalid JSON: {text[:200]}") from exc

    def _document_json(self, prompt, document):
        data = self._generate_json([prompt, {"mime_type": document["mime_type"], "data": document["data"]}])
        if not isinstance(data, dict):
            raise ExtractionError("Model returned an unexpected JSON shape")
        return data

    def extract_receipt(self, document):
        """Extract one receipt. ``document`` is ``{"name", "mime_type", "data"}``."""
        file_name = os.path.basename(document["name"])
        data = self._document_json(RECEIPT_PROMPT, document)
        return {
            "file_name": file_name,
            "description": data.get("description") or file_name,
            "date": data.get("date") or "N/A",
            "amount": clean_amount(data.get("amount")) or 0,
        }

    def extract_receipts(self, documents):
        results = []
        for document in documents:
            file_name = os.path.basename(document["name"])
            try:
                results.append(self.extract_receipt(document))
            except ExtractionError as exc:
                logger.warning("Could not parse receipt %s: %s", file_name, exc)
                results.append({"file_name": file_name, "description": file_name, "date": "Error", "amount": 0})
            except Exception:
                logger.exception("Error processing receipt %s", file_name)
                results.append(
                    {
                        "file_name": file_name,
                        "description": f"Error reading {file_name}",
                        "date": "Error",
                        "amount": 0,
                    }
                )
        return results

    def extract_payslip(self, document):
        file_name = os.path.basename(document["name"])
        data = self._document_json(PAYSLIP_PROMPT, document)

        net_pay = clean_amount(data.get("netPay"))
        if not net_pay:
            raise ExtractionError("Net pay is required but not found")

        payslip = {
            "file_name": file_name,
            "pay_date": data.get("payDate") or "N/A",
            "net_pay": net_pay,
        }

        ytd = data.get("yearToDate")
        if isinstance(ytd, dict):
            taxable_pay = clean_amount(ytd.get("totalTaxablePay"))
            taxable_ni_pay = clean_amount(ytd.get("totalTaxableNIPay"))
            paye_tax = clean_amount(ytd.get("totalPAYETax"))
            ni = clean_amount(ytd.get("totalNI"))
            if taxable_pay and taxable_ni_pay and paye_tax is not None and ni is not None:
                payslip["year_to_date"] = {
                    "total_taxable_pay": taxable_pay,
                    "total_taxable_ni_pay": taxable_ni_pay,
                    "total_paye_tax": paye_tax,
                    "total_ni": ni,
                }
        return payslip

    def extract_payslips(self, documents):
        results = []
        for document in documents:
            file_name = os.path.basename(document["name"])
            try:
                results.append(self.extract_payslip(document))
            except Exception as exc:
                logger.warning("Error processing payslip %s: %s", file_name, exc)
                results.append({"file_name": file_name, "pay_date": "Error", "net_pay": 0})
        return results

    def summarize_finances(self, pensions, financial_years, bank_accounts):
        prompt = SUMMARY_PROMPT.format(
            pensions=_to_json(pensions),
            financial_years=_to_json(financial_years),
            bank_accounts=_to_json(bank_accounts),
        )
        return self._generate_json(prompt)

    def welcome_message(self, payslips, user_name):
        prompt = WELCOME_PROMPT.format(name=user_name, payslips=_to_json((payslips or [])[:3]))
        return self._generate_json(prompt)

    def chat(self, messages, financial_data):
        """Answer the last message given the earlier ones as history."""
        if not messages:
            raise ExtractionError("At least one message is required")

        financial_data = financial_data or {}
        instruction = CHAT_INSTRUCTION.format(
            pensions=_to_json(financial_data.get("pensions")),
            bank_accounts=_to_json(financial_data.get("bankAccounts")),
            financial_years=_to_json(financial_data.get("financialYears")),
            tax_returns=_to_json(financial_data.get("taxReturns")),
        )
        model = self._model_factory(
            model_name=self.model_name,
            generation_config=self._generation_config,
            system_instruction=instruction,
        )
        contents = [
            {"role": "user" if message.get("role") == "user" else "model", "parts": [message.get("content", "")]}
            for message in messages[:-1]
        ]
        contents.append({"role": "user", "parts": [messages[-1].get("content", "")]})
        return self._generate_text(contents, model=model)
