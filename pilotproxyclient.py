#!/usr/bin/env python 

""" Pilot proxy client. Checks a payload proxy against the pilot proxy
    (X509_USER_PROXY) using pilotproxylib.py """
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


import os
import sys
import logging

from pilotproxylib import PilotSubProxy, CredentialStore, \
        LOCK_NOLOCK, LOCK_FCNTL, LOCK_FLOCK
from proxyerrors import PilotProxyError, CredentialError

__version__ = '0.2'

LOCK_TYPES = {
    'none': LOCK_NOLOCK,
    'fcntl': LOCK_FCNTL,
    'flock': LOCK_FLOCK,
}

class PilotProxyClient(object):

    def __init__(self, lock_type=LOCK_NOLOCK, debug=False):
        """ 
            lock_type -- lock used for reading the pilot proxy 
                        (LOCK_NOLOCK, LOCK_FCNTL or LOCK_FLOCK)
            debug -- print what we are doing
        """
        self.debug = debug
        self._lock_type = lock_type
        self._store = CredentialStore()

    def set_pilot_proxy(self, proxyfile):
        """ overrides X509_USER_PROXY """
        os.environ[PilotSubProxy.ENV_USER_PROXY] = proxyfile

    def get_store(self):
        """ credential data of the last check """
        return self._store

    def check_payload(self, payload_file, fqans=None, pattern=None):
        """
        Checks the payload proxy in payload_file (PEM) was delegated
        by the pilot proxy.

        payload_file -- PEM file with the payload proxy chain
        fqans -- list of FQANs of the payload 
        pattern -- if set, one of the fqans must match it

        returns -- Decision
        Exceptions: PilotProxyError, CredentialError
        """
        with open(payload_file, 'rb') as f:
            pem = f.read()

        arguments = {'pem_string': pem}
        if fqans:
            arguments['nfqan'] = len(fqans)
            arguments['fqan_list'] = list(fqans)

        if self.debug:
            print('Checking payload proxy:', payload_file)

        self._store = CredentialStore()
        psp = PilotSubProxy(arguments, self._store, self._lock_type)
        return psp.run(pattern)



if __name__ == '__main__':
    import optparse

    usage = "usage: %prog [options] payload_proxy \n\nDo %prog -h for more help."

    parser = optparse.OptionParser(usage = usage, version = "%prog " + __version__)
    parser.add_option("-d", "--debug", action = 'store_true', default = False,
                    help = "Enhance verbosity for debugging purposes")
    parser.add_option("", "--pilot", dest = "pilot",
                    default = os.environ.get(PilotSubProxy.ENV_USER_PROXY),
                    help = "Pilot proxy file (default = $X509_USER_PROXY = %default).")
    parser.add_option("", "--lock", dest = "lock", default = 'none',
                    choices = sorted(LOCK_TYPES),
                    help = "Lock used while reading the pilot proxy: " + \
                    "none, fcntl or flock (default=%default).")
    parser.add_option("", "--fqan", dest = "fqans", action = 'append',
                    default = [],
                    help = "FQAN of the payload, can be given multiple times.")
    parser.add_option("", "--pattern", dest = "pattern", default = None,
                    help = "Shell pattern one of the FQANs must match.")

    (options, args) = parser.parse_args()

    if len(args) != 1:
        parser.error("incorrect number of arguments")

    if options.debug:
        print('Invoked with following parameters:')
        print('options:', options)
        print('arguments:', args)
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    try:
        pc = PilotProxyClient(LOCK_TYPES[options.lock], debug = options.debug)
        if options.pilot:
            pc.set_pilot_proxy(options.pilot)
        decision = pc.check_payload(args[0], options.fqans, options.pattern)
    except (PilotProxyError, CredentialError, IOError) as e:
        print("Error:", e)
        sys.exit(1)

    print("Payload proxy %s is signed by the pilot proxy." % decision.subject)
    print("RFC proxy: %s, limited: %s" % (decision.classification.is_rfc,
        decision.classification.is_limited))
    for fqan in decision.fqans:
        print("FQAN:", fqan)
    sys.exit(0)
