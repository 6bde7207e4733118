import unittest
from unittest.mock import patch

from petlab import extraction
from petlab.documents import NormalizedDocument
from petlab.errors import EmptyDocument, ServiceUnavailable
from petlab.llm_provider import LlmTextResult

IMAGE = NormalizedDocument(raw_bytes=b"\xff\xd8\xff" + b"1234", media_type="image/jpeg")
PDF = NormalizedDocument(raw_bytes=b"%PDF-1.4", media_type="application/pdf")


def _success(text='{"metrics": []}'):
    return LlmTextResult(status="success", raw_response=text, warnings=[])


class TestProviderSelection(unittest.TestCase):
    def test_defaults_to_openai_when_key_configured(self):
        with patch.dict("os.environ", {"OPENAI_API_KEY": "env-key"}, clear=True):
            provider, api_key, model = extraction.resolve_provider()

        self.assertEqual((provider, api_key, model), ("openai", "env-key", "gpt-4o-mini"))

    def test_gemini_requires_its_own_key(self):
        with patch.dict("os.environ", {"PETLAB_EXTRACTION_PROVIDER": "gemini", "OPENAI_API_KEY": "x"}, clear=True):
            with self.assertRaises(ServiceUnavailable):
                extraction.resolve_provider()

    def test_unconfigured_extraction_is_service_unavailable(self):
        with patch.dict("os.environ", {}, clear=True):
            with self.assertRaises(ServiceUnavailable):
                extraction.resolve_provider()

    def test_disabled_provider_is_service_unavailable(self):
        with patch.dict("os.environ", {"PETLAB_EXTRACTION_PROVIDER": "none", "OPENAI_API_KEY": "x"}, clear=True):
            with self.assertRaises(ServiceUnavailable):
                extraction.resolve_provider()


class TestExtractionModalities(unittest.TestCase):
    def test_image_goes_through_multimodal_path(self):
        with patch.dict("os.environ", {"OPENAI_API_KEY": "env-key"}, clear=True), patch(
            "petlab.extraction.read_image_with_openai", return_value=_success()
        ) as mocked_image, patch("petlab.extraction.generate_text_with_openai") as mocked_text:
            raw_text = extraction.extract_document_text(IMAGE, language="uk")

        self.assertEqual(raw_text, '{"metrics": []}')
        self.assertFalse(mocked_text.called)
        args, kwargs = mocked_image.call_args
        self.assertEqual(args[2], IMAGE.raw_bytes)
        self.assertEqual(args[3], "image/jpeg")
        self.assertIn("Ukrainian", args[4])
        self.assertGreater(kwargs["temperature"], 0)

    def test_pdf_text_is_substituted_into_text_prompt(self):
        with patch.dict("os.environ", {"OPENAI_API_KEY": "env-key"}, clear=True), patch(
            "petlab.extraction.extract_pdf_text", return_value="Hemoglobin 95 g/L (110-180)"
        ), patch("petlab.extraction.generate_text_with_openai", return_value=_success()) as mocked_text, patch(
            "petlab.extraction.read_image_with_openai"
        ) as mocked_image:
            extraction.extract_document_text(PDF, language="en")

        self.assertFalse(mocked_image.called)
        prompt = mocked_text.call_args.args[2]
        self.assertIn("Hemoglobin 95 g/L (110-180)", prompt)
        self.assertIn("English", prompt)

    def test_pdf_without_text_fails_before_calling_engine(self):
        with patch.dict("os.environ", {"OPENAI_API_KEY": "env-key"}, clear=True), patch(
            "petlab.extraction.extract_pdf_text", side_effect=EmptyDocument("no text layer")
        ), patch("petlab.extraction.generate_text_with_openai") as mocked_text:
            with self.assertRaises(EmptyDocument):
                extraction.extract_document_text(PDF)

        self.assertFalse(mocked_text.called)

    def test_gemini_provider_uses_gemini_image_reader(self):
        with patch.dict(
            "os.environ", {"PETLAB_EXTRACTION_PROVIDER": "gemini", "GEMINI_API_KEY": "g-key"}, clear=True
        ), patch("petlab.extraction.read_image_with_gemini", return_value=_success()) as mocked_gemini:
            extraction.extract_document_text(IMAGE)

        self.assertEqual(mocked_gemini.call_args.args[:2], ("g-key", "gemini-1.5-flash"))

    def test_engine_error_is_service_unavailable(self):
        failed = LlmTextResult(status="error", raw_response=None, warnings=["OpenAI request failed with HTTP 500."])
        with patch.dict("os.environ", {"OPENAI_API_KEY": "env-key"}, clear=True), patch(
            "petlab.extraction.read_image_with_openai", return_value=failed
        ):
            with self.assertRaises(ServiceUnavailable):
                extraction.extract_document_text(IMAGE)

    def test_engine_without_text_is_empty_document(self):
        empty = LlmTextResult(status="empty", raw_response="{}", warnings=["no text"])
        with patch.dict("os.environ", {"OPENAI_API_KEY": "env-key"}, clear=True), patch(
            "petlab.extraction.read_image_with_openai", return_value=empty
        ):
            with self.assertRaises(EmptyDocument):
                extraction.extract_document_text(IMAGE)

    def test_invalid_temperature_falls_back_to_default(self):
        with patch.dict("os.environ", {"PETLAB_EXTRACTION_TEMPERATURE": "warm"}, clear=True):
            self.assertEqual(extraction._extraction_temperature(), extraction.DEFAULT_TEMPERATURE)


if __name__ == "__main__":
    unittest.main()
