"""
QR credentials for reservations.

A credential is a random UUID4 bound to exactly one reservation. The
scannable payload holds only that credential and an optional display hint
(the spot number); everything else is looked up server side after the scan.
"""
import base64
import io
import json
import uuid

import qrcode
from sqlalchemy import select

from errors import InvalidQR
from models import Reservation


def new_credential():
    return str(uuid.uuid4())


def _as_credential(value):
    if not isinstance(value, str):
        return None
    try:
        parsed = uuid.UUID(value.strip())
    except ValueError:
        return None
    if parsed.version != 4:
        return None
    return str(parsed)


def encode_payload(credential, hint=None):
    payload = {'credential': credential}
    if hint is not None:
        payload['hint'] = str(hint)
    return json.dumps(payload, separators=(',', ':'))


def decode_payload(payload):
    """
    Extracts the credential from a scanned payload. Accepts the JSON payload
    written by encode_payload() or a bare credential string.
    """
    if not isinstance(payload, str) or not payload.strip():
        raise InvalidQR('QR code data is required')

    credential = _as_credential(payload)
    if credential:
        return credential

    try:
        data = json.loads(payload)
    except ValueError:
        raise InvalidQR('Invalid QR code format')

    credential = _as_credential(data.get('credential')) if isinstance(data, dict) else None
    if credential is None:
        raise InvalidQR('Invalid QR code format')
    return credential


class QrTokenIssuer:

    def __init__(self, store, box_size=8, border=2):
        self.store = store
        self.box_size = box_size
        self.border = border

    def issue(self, reservation):
        """Stamps a fresh credential on a (not yet flushed) reservation."""
        reservation.qr_credential = new_credential()
        return reservation.qr_credential

    def payload_for(self, reservation):
        return encode_payload(reservation.qr_credential, hint=reservation.spot.spot_number)

    def render(self, payload):
        """Returns the payload as a PNG data URL the mobile client can display."""
        qr = qrcode.QRCode(box_size=self.box_size, border=self.border)
        qr.add_data(payload)
        qr.make(fit=True)
        img = qr.make_image(fill_color='black', back_color='white')

        buffer = io.BytesIO()
        img.save(buffer, format='PNG')
        encoded = base64.b64encode(buffer.getvalue()).decode('ascii')
        return 'data:image/png;base64,' + encoded

    def resolve(self, payload, for_update=False):
        """Maps a scanned payload to its reservation or raises InvalidQR."""
        credential = decode_payload(payload)
        stmt = select(Reservation).where(Reservation.qr_credential == credential)
        if for_update:
            stmt = stmt.with_for_update()
        reservation = self.store.session.execute(stmt).scalar_one_or_none()
        if reservation is None:
            raise InvalidQR('Unknown QR code')
        return reservation
