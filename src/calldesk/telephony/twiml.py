"""
TwiML documents returned to the provider's voice webhooks.
"""

from fastapi import Response


def _twiml(s: str) -> str:
    return '<?xml version="1.0" encoding="UTF-8"?>\n<Response>\n' + s + "\n</Response>"


def _xml_escape(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def build_connect_to_agent(
    greeting: str,
    agent_number: str,
    unavailable_message: str,
    record: bool = False,
    recording_callback_url: str | None = None,
) -> str:
    """Greet the caller and bridge them to the agent's phone.

    Args:
        greeting: Text spoken before dialing.
        agent_number: Number to dial; when empty the caller hears
            `unavailable_message` and the call ends.
        unavailable_message: Text spoken when nobody can be dialed.
        record: Record the bridged leg from answer.
        recording_callback_url: Where the provider reports the recording.

    Returns:
        TwiML document.
    """
    if not agent_number:
        tw = f"""
  <Say>{_xml_escape(greeting)}</Say>
  <Say>{_xml_escape(unavailable_message)}</Say>
  <Hangup />"""
        return _twiml(tw)

    dial_attrs = ""
    if record:
        dial_attrs = ' record="record-from-answer"'
        if recording_callback_url:
            dial_attrs += (
                f' recordingStatusCallback="{_xml_escape(recording_callback_url)}"'
                ' recordingStatusCallbackMethod="POST"'
            )

    tw = f"""
  <Say>{_xml_escape(greeting)}</Say>
  <Dial{dial_attrs}>{_xml_escape(agent_number)}</Dial>"""
    return _twiml(tw)


def build_hangup(message: str) -> str:
    tw = f"""
  <Say>{_xml_escape(message)}</Say>
  <Hangup />"""
    return _twiml(tw)


def twiml_response(content: str) -> Response:
    return Response(content=content, media_type="application/xml")
