from mailrelay.core.config import settings, resolve_settings
from mailrelay.core.database import Base, get_db, get_db_session
from mailrelay.core.exceptions import MailRelayError
