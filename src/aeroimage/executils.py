#
# executils.py - subprocess execution utility functions
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
import subprocess
import signal

import logging
log = logging.getLogger("aeroimage")
program_log = logging.getLogger("program")

# pylint: disable=not-context-manager
from threading import Lock
program_log_lock = Lock()

def startProgram(argv, cwd=None, stdin=None, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                 env_add=None, reset_handlers=True, reset_lang=True, **kwargs):
    """ Start an external program and return the Popen object.

        :param argv: The command to run and argument
        :param cwd: The directory to run the command in
        :param stdin: The file object to read stdin from.
        :param stdout: The file object to write stdout to.
        :param stderr: The file object to write stderr to.
        :param env_add: environment variables to add before execution
        :param reset_handlers: whether to reset to SIG_DFL any signal handlers set to SIG_IGN
        :param reset_lang: whether to set the locale of the child process to C
        :param kwargs: Additional parameters to pass to subprocess.Popen
        :return: A Popen object for the running command.
    """
    def preexec():
        # Signal handlers set to SIG_IGN persist across exec. Reset
        # these to SIG_DFL if requested. In particular this will include the
        # SIGPIPE handler set by python.
        if reset_handlers:
            for signum in range(1, signal.NSIG):
                if signal.getsignal(signum) == signal.SIG_IGN:
                    signal.signal(signum, signal.SIG_DFL)

    with program_log_lock:
        program_log.info("Running... %s", " ".join(argv))

    env = os.environ.copy()
    if reset_lang:
        env.update({"LC_ALL": "C"})
    if env_add:
        env.update(env_add)

    # pylint: disable=subprocess-popen-preexec-fn
    return subprocess.Popen(argv,
                            stdin=stdin,
                            stdout=stdout,
                            stderr=stderr,
                            close_fds=True,
                            preexec_fn=preexec, cwd=cwd, env=env, **kwargs)

def _run_program(argv, cwd=None, stdin=None, log_output=True, filter_stderr=False,
                 raise_err=False, env_add=None, reset_handlers=True, reset_lang=True):
    """ Run an external program, log the output and return it to the caller

        :param argv: The command to run and argument
        :param cwd: The directory to run the command in
        :param stdin: The file object to read stdin from.
        :param log_output: whether to log the output of command
        :param filter_stderr: whether to exclude the contents of stderr from the returned output
        :param raise_err: whether to raise a CalledProcessError if the returncode is non-zero
        :param env_add: environment variables to add before execution
        :param reset_handlers: whether to reset to SIG_DFL any signal handlers set to SIG_IGN
        :param reset_lang: whether to set the locale of the child process to C
        :return: The return code of the command and the output
        :raises: OSError or CalledProcessError
    """
    try:
        if filter_stderr:
            stderr = subprocess.PIPE
        else:
            stderr = subprocess.STDOUT

        proc = startProgram(argv, cwd=cwd, stdin=stdin, stdout=subprocess.PIPE, stderr=stderr,
                            universal_newlines=True, env_add=env_add,
                            reset_handlers=reset_handlers, reset_lang=reset_lang)

        (output_string, err_string) = proc.communicate()
        if output_string and log_output:
            with program_log_lock:
                for line in output_string.splitlines():
                    program_log.info(line.strip())

        # If stderr was filtered, log it separately
        if filter_stderr and err_string and log_output:
            with program_log_lock:
                for line in err_string.splitlines():
                    program_log.info(line.strip())

    except OSError as e:
        with program_log_lock:
            program_log.error("Error running %s: %s", argv[0], e.strerror)
        raise

    with program_log_lock:
        program_log.debug("Return code: %s", proc.returncode)

    if proc.returncode and raise_err:
        output = (output_string or "") + (err_string or "")
        raise subprocess.CalledProcessError(proc.returncode, argv, output)

    return (proc.returncode, output_string or "")

def execWithRedirect(command, argv, stdin=None, cwd=None, log_output=True, raise_err=False,
                     env_add=None, reset_handlers=True, reset_lang=True):
    """ Run an external program, logging its output.

        :param command: The command to run
        :param argv: The argument list
        :param stdin: The file object to read stdin from.
        :param cwd: The directory to run the command in
        :param log_output: whether to log the output of command
        :param raise_err: whether to raise a CalledProcessError if the returncode is non-zero
        :param env_add: environment variables to add before execution
        :param reset_handlers: whether to reset to SIG_DFL any signal handlers set to SIG_IGN
        :param reset_lang: whether to set the locale of the child process to C
        :return: The return code of the command
    """
    argv = [command] + list(argv)
    return _run_program(argv, cwd=cwd, stdin=stdin, log_output=log_output, raise_err=raise_err,
                        env_add=env_add, reset_handlers=reset_handlers, reset_lang=reset_lang)[0]

def execWithCapture(command, argv, stdin=None, cwd=None, log_output=True, filter_stderr=False,
                    raise_err=False, env_add=None, reset_handlers=True, reset_lang=True):
    """ Run an external program and capture standard out and err.

        :param command: The command to run
        :param argv: The argument list
        :param stdin: The file object to read stdin from.
        :param cwd: The directory to run the command in
        :param log_output: Whether to log the output of command
        :param filter_stderr: Whether stderr should be excluded from the returned output
        :param raise_err: whether to raise a CalledProcessError if the returncode is non-zero
        :param env_add: environment variables to add before execution
        :param reset_handlers: whether to reset to SIG_DFL any signal handlers set to SIG_IGN
        :param reset_lang: whether to set the locale of the child process to C
        :return: The output of the command
    """
    argv = [command] + list(argv)
    return _run_program(argv, cwd=cwd, stdin=stdin, log_output=log_output,
                        filter_stderr=filter_stderr, raise_err=raise_err, env_add=env_add,
                        reset_handlers=reset_handlers, reset_lang=reset_lang)[1]

def runcmd(cmd, **kwargs):
    """ run execWithRedirect with raise_err=True
    """
    kwargs["raise_err"] = True
    return execWithRedirect(cmd[0], cmd[1:], **kwargs)

def runcmd_output(cmd, **kwargs):
    """ run execWithCapture with raise_err=True
    """
    kwargs["raise_err"] = True
    return execWithCapture(cmd[0], cmd[1:], **kwargs)
