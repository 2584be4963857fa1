"""
SSH session handling

Authenticator -> Selector -> Connector -> Relay, driven per connection by
SessionSupervisor (see ssh_proxy.start_session).
"""
