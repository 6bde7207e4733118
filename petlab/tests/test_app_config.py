import os
import unittest
from importlib import reload

import petlab.app as app_module


class TestCorsConfig(unittest.TestCase):
    def setUp(self):
        self.original_cors_origins = os.environ.get("PETLAB_CORS_ALLOWED_ORIGINS")

    def tearDown(self):
        if self.original_cors_origins is None:
            os.environ.pop("PETLAB_CORS_ALLOWED_ORIGINS", None)
        else:
            os.environ["PETLAB_CORS_ALLOWED_ORIGINS"] = self.original_cors_origins

        reload(app_module)

    def test_default_cors_allows_local_frontend_origin(self):
        os.environ.pop("PETLAB_CORS_ALLOWED_ORIGINS", None)
        module = reload(app_module)

        self.assertIn("http://localhost:3000", module.CORS_ALLOWED_ORIGINS)
        self.assertIn("http://127.0.0.1:3000", module.CORS_ALLOWED_ORIGINS)

        cors_middleware_entries = [
            entry
            for entry in module.app.user_middleware
            if entry.cls.__name__ == "CORSMiddleware"
        ]
        self.assertTrue(cors_middleware_entries)

    def test_cors_origins_are_read_from_environment(self):
        os.environ["PETLAB_CORS_ALLOWED_ORIGINS"] = "https://petlab.example.com, ,https://admin.example.com"
        module = reload(app_module)

        self.assertEqual(
            module.CORS_ALLOWED_ORIGINS,
            ["https://petlab.example.com", "https://admin.example.com"],
        )


class TestErrorStatusCodes(unittest.TestCase):
    def test_every_error_maps_to_its_status(self):
        from petlab.errors import Conflict, EmptyDocument, KnowledgeBaseError, NotFound, RunFailed

        self.assertEqual(app_module._status_code_for(NotFound("animal", "a1")), 404)
        self.assertEqual(app_module._status_code_for(Conflict()), 409)
        self.assertEqual(app_module._status_code_for(EmptyDocument()), 422)
        self.assertEqual(app_module._status_code_for(RunFailed("failed")), 500)
        self.assertEqual(app_module._status_code_for(KnowledgeBaseError("down")), 502)


if __name__ == "__main__":
    unittest.main()
