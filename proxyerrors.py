""" Exceptions raised by the pilot proxy library. """
# Copyright (c) 2012, SWITCH - Serving Swiss Universities
# All rights reserved.
# 
# Redistribution and use in source and binary forms, with or without
# modification, are permitted provided that the following conditions are met:
#     * Redistributions of source code must retain the above copyright
#       notice, this list of conditions and the following disclaimer.
#     * Redistributions in binary form must reproduce the above copyright
#       notice, this list of conditions and the following disclaimer in the
#       documentation and/or other materials provided with the distribution.
#     * Neither the name of the SWITCH nor the
#       names of its contributors may be used to endorse or promote products
#       derived from this software without specific prior written permission.
# 
# THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND CONTRIBUTORS "AS IS" AND
# ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT LIMITED TO, THE IMPLIED
# WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A PARTICULAR PURPOSE ARE
# DISCLAIMED. IN NO EVENT SHALL <COPYRIGHT HOLDER> BE LIABLE FOR ANY
# DIRECT, INDIRECT, INCIDENTAL, SPECIAL, EXEMPLARY, OR CONSEQUENTIAL DAMAGES
# (INCLUDING, BUT NOT LIMITED TO, PROCUREMENT OF SUBSTITUTE GOODS OR SERVICES;
# LOSS OF USE, DATA, OR PROFITS; OR BUSINESS INTERRUPTION) HOWEVER CAUSED AND
# ON ANY THEORY OF LIABILITY, WHETHER IN CONTRACT, STRICT LIABILITY, OR TORT
# (INCLUDING NEGLIGENCE OR OTHERWISE) ARISING IN ANY WAY OUT OF THE USE OF THIS
# SOFTWARE, EVEN IF ADVISED OF THE POSSIBILITY OF SUCH DAMAGE.



class PilotProxyError(Exception):
    """ 
    Exception raised for pilot/payload proxy errors.
    Attributes:
        expression -- input expression in which error occurred
        message -- explanation of error 
        code -- negative, operation specific return code
    """
    code = -1

    def __init__(self, expression, message, code=None):
        self.expression = expression
        self.message = message
        if code is not None:
            self.code = code
        Exception.__init__(self, expression, message)

    def __str__(self):
        return self.message

class PilotProxyConfigError(PilotProxyError):
    """ Raised for missing environment or host framework arguments. """
    pass

class PilotProxyInputError(PilotProxyError):
    """ Raised for wrong input parameters (unknown lock types, None etc.)"""
    pass

class ProxyIOError(PilotProxyError):
    """ Raised when a proxy file can't be opened, stat-ed or fully read. """
    code = -1

class PrivilegeError(PilotProxyError):
    """ Raised when dropping the effective uid/gid fails. 
        The file is never opened in that case.
    """
    code = -2

    def __init__(self, expression, message, errno=None):
        self.errno = errno
        PilotProxyError.__init__(self, expression, message)

class ProxyPermissionError(PilotProxyError):
    """ Raised for proxy files with unsafe ownership or mode bits. """
    code = -3

class ProxyMemoryError(PilotProxyError):
    """ Raised when no buffer for the proxy contents can be allocated. """
    code = -4

class TooManyRetriesError(PilotProxyError):
    """ Raised when the proxy file kept changing while being read. """
    code = -5

class ProxyLockError(PilotProxyError):
    """ Raised when an advisory lock can't be set or released. """
    code = -6

class ProxyParseError(PilotProxyError):
    """ Raised for empty or malformed PEM credential material. """
    pass

class TrustError(PilotProxyError):
    """ Raised when the payload proxy is not signed by the pilot proxy.
    Attributes:
        verdict -- the TrustVerdict of the failed check
    """

    def __init__(self, expression, message, verdict):
        self.verdict = verdict
        PilotProxyError.__init__(self, expression, message)

class FQANMismatchError(PilotProxyError):
    """ Raised when none of the payload FQANs matches the required pattern. """
    pass


class CredentialError(Exception):
    """ 
    Exception raised for Credential errors, i.e. when credential
    data can't be handed over to the host framework.
    Attributes:
        expression -- input expression in which error occurred
        message -- explanation of error 
    """
    code = -1

    def __init__(self, expression, message):
        self.expression = expression
        self.message = message
        Exception.__init__(self, expression, message)

    def __str__(self):
        return self.message
