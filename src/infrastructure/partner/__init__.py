from .factory import create_partner_api
from .fake_partner import FakePartnerApi
from .partner_client import PartnerHttpClient

__all__ = ["create_partner_api", "FakePartnerApi", "PartnerHttpClient"]
