#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
import email
import email.utils
import fnmatch
import urllib.parse

import requests

import gitsubmit

from typing import Optional, List, Tuple, Dict, Set, Iterable

logger = gitsubmit.logger


class RecipientSet:
    """To and Cc destinations keyed by lowercased address, so the same
    person is only ever listed once. To wins over Cc."""
    to: Dict[str, Tuple[str, str]]
    cc: Dict[str, Tuple[str, str]]

    def __init__(self):
        self.to = dict()
        self.cc = dict()

    def add_pairs(self, hdrname: str, pairs: Iterable[Tuple[str, str]]) -> None:
        for pair in pairs:
            # Only qualified addresses, please
            addr = pair[1].strip()
            if not addr or '@' not in addr:
                logger.debug('Skipping unqualified address %s', pair)
                continue
            key = addr.lower()
            if hdrname == 'to':
                self.cc.pop(key, None)
                if key not in self.to:
                    self.to[key] = (pair[0], addr)
            elif key not in self.to and key not in self.cc:
                self.cc[key] = (pair[0], addr)

    def add(self, hdrname: str, values: Iterable[str]) -> None:
        self.add_pairs(hdrname, email.utils.getaddresses(list(values)))

    def remove_excluded(self, excludes: Set[str]) -> None:
        for dests in (self.to, self.cc):
            for key, pair in list(dests.items()):
                for exclude in excludes:
                    if fnmatch.fnmatch(pair[1], exclude):
                        logger.debug('Removed %s due to matching %s', pair[1], exclude)
                        dests.pop(key)
                        break

    def get_to(self) -> List[Tuple[str, str]]:
        return list(self.to.values())

    def get_cc(self) -> List[Tuple[str, str]]:
        return list(self.cc.values())

    def get_all_addrs(self) -> Set[str]:
        return {x[1] for x in self.get_to() + self.get_cc()}

    def __len__(self):
        return len(self.to) + len(self.cc)

    def __repr__(self):
        out = list()
        out.append('    To: %s' % gitsubmit.format_addrs(self.get_to()))
        out.append('    Cc: %s' % gitsubmit.format_addrs(self.get_cc()))
        return '\n'.join(out)


def get_raw_message(msgid: str, nocache: bool = False) -> bytes:
    if not gitsubmit.can_network:
        raise gitsubmit.AddressLookupError('Cannot look up %s in offline mode' % msgid)
    if not nocache:
        cached = gitsubmit.get_cache(msgid, suffix='lookup')
        if cached:
            return cached

    config = gitsubmit.get_main_config()
    url = config['rawmask'] % urllib.parse.quote_plus(msgid)
    logger.info('Looking up %s', url)
    session = gitsubmit.get_requests_session()
    try:
        resp = session.get(url)
        resp.raise_for_status()
    except requests.exceptions.RequestException as ex:
        raise gitsubmit.AddressLookupError('Unable to retrieve %s: %s' % (url, ex))
    rawmsg = resp.content
    resp.close()
    gitsubmit.save_cache(rawmsg, msgid, suffix='lookup')
    return rawmsg


def lookup_addresses(msgid: str, nocache: bool = False) -> Tuple[List[Tuple[str, str]], List[Tuple[str, str]]]:
    """Return the To (plus the author) and Cc addresses of the message with this msgid."""
    msgid = msgid.strip().strip('<>')
    rawmsg = get_raw_message(msgid, nocache=nocache)
    msg = email.message_from_bytes(rawmsg)
    if not msg.get('From'):
        raise gitsubmit.AddressLookupError('Lookup for %s did not return a message' % msgid)

    # The author of the message we reply to goes into To along with everyone else
    tos = email.utils.getaddresses([str(x) for x in msg.get_all('to', [])])
    tos += email.utils.getaddresses([str(x) for x in msg.get_all('from', [])])
    ccs = email.utils.getaddresses([str(x) for x in msg.get_all('cc', [])])
    logger.debug('Found %s To and %s Cc addresses in %s', len(tos), len(ccs), msgid)
    return tos, ccs


def resolve_recipients(to: Optional[List[str]], cc: Optional[List[str]],
                       in_reply_to: Optional[str] = None) -> RecipientSet:
    config = gitsubmit.get_main_config()
    rset = RecipientSet()

    tos = list()
    if to:
        tos += to
    if config.get('send-series-to'):
        tos.append(config.get('send-series-to'))
    rset.add('to', tos)

    ccs = list()
    if cc:
        ccs += cc
    if config.get('send-series-cc'):
        ccs.append(config.get('send-series-cc'))
    rset.add('cc', ccs)

    if in_reply_to:
        try:
            ltos, lccs = lookup_addresses(in_reply_to)
            rset.add_pairs('to', ltos)
            rset.add_pairs('cc', lccs)
        except gitsubmit.AddressLookupError as ex:
            logger.warning('WARNING: %s', ex)
            logger.warning('         Continuing with the addresses given on the command line')

    rset.remove_excluded(gitsubmit.get_excluded_addrs())
    return rset
