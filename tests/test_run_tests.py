"""
Unit tests for the test runner script.
"""

import os
import tempfile
import unittest

import run_tests


class TestRunner(unittest.TestCase):
    """Test cases for test discovery."""

    def test_discovery_independent_of_working_directory(self):
        """Tests are found when the runner is started from another directory."""
        self.assertEqual(run_tests.TEST_DIR, os.path.dirname(os.path.abspath(__file__)))

        cwd = os.getcwd()
        self.addCleanup(os.chdir, cwd)
        with tempfile.TemporaryDirectory() as other:
            os.chdir(other)
            suite = unittest.TestLoader().discover(run_tests.TEST_DIR, pattern="test_cnc_flow.py")
            os.chdir(cwd)

        self.assertGreater(suite.countTestCases(), 0)


if __name__ == "__main__":
    unittest.main()
