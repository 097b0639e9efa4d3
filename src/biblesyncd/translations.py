# -*- coding: utf-8 -*-
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Sync of translations a user uploaded from their own files.

Metadata follows last-write-wins on ``uploadedAt``; chapter text is pushed
and pulled separately because it is large and rarely changes.
"""

from biblesyncd import logging
from biblesyncd.exceptions import ProtocolError, TranslationNotFound

logger = logging.get_logger(__name__)


def _validate_translation(t):
    if not isinstance(t, dict):
        raise ProtocolError("translation must be an object")
    for name in ("id", "name", "mappingId"):
        if not isinstance(t.get(name), str) or not t.get(name):
            raise ProtocolError("translation is missing {}".format(name))
    uploaded_at = t.get("uploadedAt")
    if isinstance(uploaded_at, bool) or not isinstance(uploaded_at, (int, float)):
        raise ProtocolError("translation {} has no uploadedAt".format(t["id"]))
    return dict(t, uploadedAt=int(uploaded_at))


def _validate_chapter(ch):
    if not isinstance(ch, dict):
        raise ProtocolError("chapter must be an object")
    for name in ("bookId", "chapter"):
        value = ch.get(name)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ProtocolError("chapter is missing {}".format(name))
    return ch


class TranslationSync(object):
    def __init__(self, store):
        self.store = store

    def sync(self, user_id, translations):
        """Merges the client's translation list and returns the server's full list."""
        if translations is None:
            translations = []
        if not isinstance(translations, list):
            raise ProtocolError("translations must be a list")
        incoming = [_validate_translation(t) for t in translations]

        with self.store.transaction() as txn:
            for t in incoming:
                owner = txn.translation_owner(t["id"])
                if owner is not None and owner != user_id:
                    raise ProtocolError("translation id {} is taken".format(t["id"]))
                stored_at = txn.translation_uploaded_at(user_id, t["id"])
                if stored_at is None or t["uploadedAt"] > stored_at:
                    txn.upsert_translation(user_id, t)
            result = txn.list_translations(user_id)

        logger.info("Synced {} translations for user {}".format(len(incoming), user_id))
        return result

    def _check_owner(self, txn, user_id, translation_id):
        if txn.translation_owner(translation_id) != user_id:
            raise TranslationNotFound("Translation {} not found".format(translation_id))

    def upload_chapters(self, user_id, translation_id, chapters):
        if chapters is None:
            chapters = []
        if not isinstance(chapters, list):
            raise ProtocolError("chapters must be a list")
        chapters = [_validate_chapter(ch) for ch in chapters]

        with self.store.transaction() as txn:
            self._check_owner(txn, user_id, translation_id)
            for ch in chapters:
                txn.put_chapter(translation_id, ch["bookId"], ch["chapter"], ch.get("data"))
        return len(chapters)

    def download_chapters(self, user_id, translation_id):
        with self.store.transaction() as txn:
            self._check_owner(txn, user_id, translation_id)
            return txn.get_chapters(translation_id)
