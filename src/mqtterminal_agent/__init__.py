"""
MQTTerminal Agent — remote command execution over MQTT.

Connects to a broker, subscribes to a single topic, runs COMMAND/ payloads in
the host shell and publishes the captured output back as OUTPUT/ payloads.
"""
