#!/usr/bin/env python

""" Reads pem-encoded certs from a string or file and,
    run as a script, prints subject, issuer and proxy type 
    for each certificate of a proxy file.

"""
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


import logging

from M2Crypto import X509

from proxyerrors import ProxyParseError

__version__ = '0.2.0'

log = logging.getLogger(__name__)

START = '-----BEGIN CERTIFICATE-----'
END = '-----END CERTIFICATE-----'


def certs_from_string(pem):
    """ Extracts (pem-encoded) certificates from string, in 
        order of appearance. Blocks which can't be loaded as
        certificate are skipped, other pem blocks (e.g. the key 
        of a proxy) are ignored.

        pem -- str or bytes

        Returns -- list of X509 cert objects (at least one)
        Raises -- ProxyParseError if pem is empty or contains 
                  no certificate at all.
    """
    if not pem:
        raise ProxyParseError("Empty PEM", "No PEM data to convert")
    if isinstance(pem, bytes):
        pem = pem.decode('latin-1')

    cert_list = list()
    cert_str = ''
    read_flag = False

    for line in pem.splitlines(True):
        if START in line:
            read_flag = True
            cert_str = ''
        if read_flag:
            cert_str += line
        if END in line and read_flag:
            read_flag = False
            try:
                x509 = X509.load_cert_string(cert_str.encode('latin-1'),
                                             X509.FORMAT_PEM)
            except X509.X509Error as err:
                log.debug("certs_from_string: skipping undecodable "
                    "certificate block: %s", err)
            else:
                cert_list.append(x509)
            cert_str = ''

    if not cert_list:
        raise ProxyParseError("No certificates",
            "PEM data does not contain any certificate")
    return cert_list

def certs_from_file(filename):
    """ Extracts (pem-encoded) certificates from file. 
        
        Returns -- list of X509 cert objects, see certs_from_string()
    """
    with open(filename, 'rb') as f:
        return certs_from_string(f.read())


if __name__ == "__main__":

    import optparse
    import os.path
    import sys

    from pilotproxylib import ProxyCertificate, classify_proxy

    usage= "usage: %prog [options] cert_file \n\nDo %prog -h for more help."
    
    parser = optparse.OptionParser(usage=usage, version ="%prog " + __version__)
    parser.add_option("-v", "--verbose", action = 'store_true', default= False,
                    help = "Enhance verbosity.")

    (options, args) = parser.parse_args()
    
    if not args:
        parser.error("incorrect number of arguments")

    filename = args[0] 

    if not os.path.isfile(filename):
        print("Error: '%s' is not a file or does not exist." % filename)
        sys.exit(1)

    if options.verbose:
        logging.basicConfig(level=logging.DEBUG)

    try:
        cert_list = certs_from_file(filename)
    except ProxyParseError as e:
        print("Error:", e)
        sys.exit(1)

    for cnt, x509 in enumerate(cert_list):
        crt = ProxyCertificate(x509)
        cls = classify_proxy(crt)
        print('-' * 10, ' ', cnt, ' ', '-' * 10)
        print('Cert subject:', crt.subject)
        print('Cert issuer: ', crt.issuer)
        print('RFC proxy:   ', cls.is_rfc)
        print('Limited:     ', cls.is_limited)
        if options.verbose:
            for ext in crt.extensions:
                print('Extension:   ', ext.oid, ext.critical and '(critical)' or '')
    sys.exit(0)
