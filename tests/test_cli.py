import unittest
import contextlib
from contextlib import redirect_stdout, redirect_stderr
import io, logging, os, tempfile
from unittest import mock
from payment_engine import main, process_file, DuplicateTransactionId, MissingAmount


def fixture_path(filename):
    return os.path.dirname(os.path.abspath(__file__)) + os.path.sep + 'fixtures' + os.path.sep + filename


SAMPLE1_OUTPUT = ("client,available,held,total,locked\n"
                  "1,1.5,0,1.5,false\n"
                  "2,2,0,2,false\n")

SAMPLE3_OUTPUT = ("client,available,held,total,locked\n"
                  "1,199.6234,0,199.6234,false\n"
                  "2,1.01,0,1.01,false\n"
                  "3,12.342,0,12.342,false\n"
                  "15,1,0,1,true\n"
                  "16,0.89,0,0.89,false\n")


class TestCommandLine(unittest.TestCase):

    def setUp(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level

        def restore_logging():
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
        self.addCleanup(restore_logging)

    @contextlib.contextmanager
    def captured_output(self):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            yield out, err

    def run_main(self, *argv):
        with self.captured_output() as (out, err):
            exit_code = main(list(argv))
            return exit_code, out.getvalue(), err.getvalue()

    def test__sample1__output_matches_expected(self):
        exit_code, output, _ = self.run_main(fixture_path("sample1.csv"))
        self.assertEqual(0, exit_code)
        self.assertEqual(SAMPLE1_OUTPUT, output)

    def test__sample1a_no_header_in_input__output_matches_expected(self):
        exit_code, output, _ = self.run_main(fixture_path("sample1a.csv"))
        self.assertEqual(0, exit_code)
        self.assertEqual(SAMPLE1_OUTPUT, output)

    def test__sample2__output_matches_expected(self):
        # nonstandard field order plus a junk column to ignore
        exit_code, output, _ = self.run_main(fixture_path("sample2.csv"))
        self.assertEqual(0, exit_code)
        self.assertEqual(SAMPLE1_OUTPUT, output)

    def test__sample3__output_matches_expected(self):
        # disputes, chargebacks and invalid state attempts
        for lookup in ("cache", "seek"):
            exit_code, output, errors = self.run_main(fixture_path("sample3.csv"), "--lookup", lookup)
            self.assertEqual(0, exit_code)
            self.assertEqual(SAMPLE3_OUTPUT, output)
            self.assertEqual(5, errors.count("failed to apply"))
            self.assertIn("tx_id 4, client_id 1, failed to apply dispute: tx client_id mismatch", errors)

    def test__log_level_error__silences_rejections(self):
        exit_code, output, errors = self.run_main(fixture_path("sample3.csv"), "--log-level", "error")
        self.assertEqual(0, exit_code)
        self.assertEqual(SAMPLE3_OUTPUT, output)
        self.assertEqual("", errors)

    def test__log_level__read_from_environment(self):
        with mock.patch.dict(os.environ, {"PAYMENT_ENGINE_LOG": "ERROR"}):
            _, _, errors = self.run_main(fixture_path("sample3.csv"))
        self.assertEqual("", errors)

    def test__unknown_log_level__usage_error(self):
        with self.assertRaises(SystemExit) as test_exc:
            self.run_main(fixture_path("sample1.csv"), "--log-level", "chatty")
        self.assertEqual(2, test_exc.exception.code)

    def test__duplicate_tx__fails_without_output(self):
        exit_code, output, errors = self.run_main(fixture_path("duplicate_tx.csv"))
        self.assertEqual(1, exit_code)
        self.assertEqual("", output)
        self.assertIn("tx_id 1, client_id 1, failed to apply deposit of $5.0: deposit duplicates existing tx_id", errors)

    def test__missing_amount__fails_without_output(self):
        exit_code, output, errors = self.run_main(fixture_path("missing_amount.csv"))
        self.assertEqual(1, exit_code)
        self.assertEqual("", output)
        self.assertIn("failed to apply withdrawal: missing amount", errors)

    def test__missing_input_file__fails_without_output(self):
        exit_code, output, errors = self.run_main(fixture_path("does_not_exist.csv"))
        self.assertEqual(1, exit_code)
        self.assertEqual("", output)
        self.assertIn("error: can't read", errors)

    def test__undecodable_bytes_and_huge_amounts__skipped(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "input.csv")
            with open(path, "wb") as file:
                file.write(b"type,client,tx,amount\n"
                           b"deposit,1,1,1.0\n"
                           b"deposit,1,2,\xff\xfe\n"
                           b"deposit,1,3,1e30\n"
                           b"deposit,2,4,0.5\n")
            exit_code, output, _ = self.run_main(path)
        self.assertEqual(0, exit_code)
        self.assertEqual(("client,available,held,total,locked\n"
                          "1,1,0,1,false\n"
                          "2,0.5,0,0.5,false\n"), output)

    def test__missing_argument__usage_error(self):
        with self.assertRaises(SystemExit) as test_exc:
            self.run_main()
        self.assertEqual(2, test_exc.exception.code)

    def test__process_file__raises_fatal_errors(self):
        with self.assertRaises(DuplicateTransactionId):
            process_file(fixture_path("duplicate_tx.csv"))
        with self.assertRaises(MissingAmount):
            process_file(fixture_path("missing_amount.csv"), lookup="seek")


if __name__ == '__main__':
    unittest.main()
