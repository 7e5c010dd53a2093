#
# Copyright (C) 2021  The Aero Project Developers
#
# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation; either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.
#
import os
from subprocess import CalledProcessError
import tempfile
import unittest

from aeroimage.executils import startProgram
from aeroimage.executils import execWithRedirect, execWithCapture
from aeroimage.executils import runcmd, runcmd_output

class ExecUtilsTest(unittest.TestCase):
    def test_startProgram(self):
        cmd = ["sh", "-c", "echo $LC_ALL"]
        proc = startProgram(cmd, reset_lang=True)
        (stdout, _stderr) = proc.communicate()
        self.assertEqual(stdout.strip(), b"C")

        cmd = ["sh", "-c", "echo $AEROIMAGE_TEST"]
        proc = startProgram(cmd, env_add={"AEROIMAGE_TEST": "limine"})
        (stdout, _stderr) = proc.communicate()
        self.assertEqual(stdout.strip(), b"limine")

    def test_cwd(self):
        with tempfile.TemporaryDirectory(prefix="aeroimage.test.") as work_dir:
            stdout = execWithCapture("pwd", [], cwd=work_dir)
            self.assertEqual(os.path.realpath(stdout.strip()), os.path.realpath(work_dir))

    def test_execWithRedirect(self):
        import logging
        logger = logging.getLogger("aeroimage")
        logger.addHandler(logging.NullHandler())
        program_log = logging.getLogger("program")
        program_log.setLevel(logging.INFO)

        tmp_f = tempfile.NamedTemporaryFile(prefix="aeroimage.test.log.", delete=False)
        fh = logging.FileHandler(filename=tmp_f.name, mode="w")
        program_log.addHandler(fh)

        try:
            cmd = ["sh", "-c", "echo 'mkfs.ext2 was here'; exit 1"]
            rc = execWithRedirect(cmd[0], cmd[1:])
            self.assertEqual(rc, 1)

            fh.close()
            with open(tmp_f.name, "r") as f:
                logged_text = f.readlines()[-1].strip()
            self.assertEqual(logged_text, "mkfs.ext2 was here")
        finally:
            os.unlink(tmp_f.name)
            program_log.removeHandler(fh)

    def test_execWithCapture(self):
        cmd = ["sh", "-c", "printf 'GPT label'; exit 0"]
        stdout = execWithCapture(cmd[0], cmd[1:])
        self.assertEqual(stdout.strip(), "GPT label")

    def test_returncode(self):
        cmd = ["sh", "-c", "echo 'no free loop devices'; exit 1"]
        with self.assertRaises(CalledProcessError) as cm:
            execWithCapture(cmd[0], cmd[1:], raise_err=True)
        self.assertEqual(cm.exception.returncode, 1)
        self.assertIn("no free loop devices", cm.exception.output)

    def test_exec_filter_stderr(self):
        cmd = ["sh", "-c", "echo 'device busy' >&2; exit 0"]
        stdout = execWithCapture(cmd[0], cmd[1:], filter_stderr=True)
        self.assertEqual(stdout.strip(), "")

    def test_missing_program(self):
        with self.assertRaises(OSError):
            execWithCapture("aeroimage-no-such-program", [])

    def test_runcmd(self):
        rc = runcmd(["sh", "-c", "echo sync; exit 0"])
        self.assertEqual(rc, 0)

        with self.assertRaises(CalledProcessError):
            runcmd(["sh", "-c", "exit 32"])

    def test_runcmd_output(self):
        stdout = runcmd_output(["sh", "-c", "echo /dev/loop0; exit 0"])
        self.assertEqual(stdout.strip(), "/dev/loop0")
