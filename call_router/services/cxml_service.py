"""
cXML Response Generator
Renders routing decisions as carrier call-control documents
"""

from typing import List, Optional
from xml.etree import ElementTree

from twilio.twiml.voice_response import VoiceResponse

from call_router.core.config import settings
from call_router.core.logging import get_logger
from call_router.models.call import RoutingDecision
from call_router.models.tenant import VoiceAgent

logger = get_logger(__name__)

HANGUP_DOCUMENT = '<?xml version="1.0" encoding="UTF-8"?><Response><Hangup /></Response>'

VALID_VERBS = frozenset({"Dial", "Hangup"})


class CxmlService:
    """
    Builds cXML (TwiML-compatible) with the twilio TwiML builder.

    Attribute and text values are escaped by the XML serializer. Every
    document is parsed back before it is returned; anything that fails to
    build or parse becomes a hangup.
    """

    def __init__(self, action_url: Optional[str] = None):
        self.action_url = action_url if action_url is not None else settings.dial_action_url

    def render(self, decision: RoutingDecision) -> str:
        try:
            if decision.success and decision.agent is not None:
                document = self.generate_agent_dial(decision.agent, decision.caller_id)
            elif decision.success and decision.trunk is not None:
                document = self.generate_trunk_dial(
                    decision.destination,
                    decision.trunk_ids or [decision.trunk.carrier_trunk_id],
                    caller_id=decision.caller_id,
                    ring_timeout=decision.ring_timeout,
                    max_duration=decision.max_duration
                )
            else:
                document = self.generate_hangup()

            if not self.is_valid(document):
                raise ValueError("Rendered document is not valid cXML")
            return document

        except Exception as e:
            logger.error(f"Failed to render {decision.routing_type.value} decision, hanging up: {e}")
            return HANGUP_DOCUMENT

    def generate_agent_dial(self, agent: VoiceAgent, caller_id: Optional[str] = None) -> str:
        """Dial a voice agent through its provider service"""
        response = VoiceResponse()
        dial = response.dial(
            caller_id=caller_id or None,
            action=self.action_url or None,
            method="POST" if self.action_url else None
        )

        attributes = {"provider": agent.provider.value}
        if agent.has_credentials:
            attributes["username"] = agent.username
            attributes["password"] = agent.password

        dial.add_child("Service", agent.service_value, **attributes)
        return str(response)

    def generate_trunk_dial(
        self,
        destination: Optional[str],
        trunk_ids: List[str],
        caller_id: Optional[str] = None,
        ring_timeout: Optional[int] = None,
        max_duration: Optional[int] = None
    ) -> str:
        """Dial a number out through one or more carrier trunks"""
        if not destination:
            raise ValueError("Trunk dial needs a destination number")

        response = VoiceResponse()
        dial = response.dial(
            caller_id=caller_id or None,
            action=self.action_url or None,
            method="POST" if self.action_url else None,
            timeout=str(ring_timeout) if ring_timeout else None,
            trunks=",".join(trunk_ids) if trunk_ids else None,
            max_duration=str(max_duration) if max_duration else None
        )
        dial.number(destination)
        return str(response)

    def generate_hangup(self) -> str:
        response = VoiceResponse()
        response.hangup()
        return str(response)

    @staticmethod
    def is_valid(document: str) -> bool:
        """Parse the document and check it is a Response with a known verb"""
        try:
            root = ElementTree.fromstring(document.encode("utf-8"))
        except ElementTree.ParseError as e:
            logger.warning(f"Generated cXML does not parse: {e}")
            return False

        if root.tag != "Response" or len(root) == 0:
            return False
        return all(child.tag in VALID_VERBS for child in root)

    @staticmethod
    def is_dial(document: str) -> bool:
        try:
            root = ElementTree.fromstring(document.encode("utf-8"))
        except ElementTree.ParseError:
            return False
        return root.find("Dial") is not None


# Singleton instance
_cxml_service: Optional[CxmlService] = None


def get_cxml_service() -> CxmlService:
    """Get the CxmlService singleton instance"""
    global _cxml_service
    if _cxml_service is None:
        _cxml_service = CxmlService()
    return _cxml_service
