import socket

from zeroconf import ServiceInfo

SERVICE_TYPE = "_murmurd._tcp.local."


class Broadcast():
    def __init__(self, zeroconf, instance_name, user_id, port, address=None, external_address=None):
        self.zeroconf = zeroconf
        self.instance_name = instance_name
        self.user_id = user_id
        self.port = port
        self.address = address
        self.external_address = external_address
        self.service_info = None

    #Announces the identity on the local network over mDNS
    async def start_service(self):
        hostname = socket.gethostname()
        ip_addr = self.address
        if not ip_addr or ip_addr == "0.0.0.0":
            ip_addr = socket.gethostbyname(hostname)

        properties = {"user_id": self.user_id}
        if self.external_address:
            properties["external"] = self.external_address

        self.service_info = ServiceInfo(
            type_=SERVICE_TYPE,
            name=f"{self.instance_name}.{SERVICE_TYPE}",
            addresses=[socket.inet_aton(ip_addr)],
            port=self.port,
            properties=properties,
            server=f"{hostname}.local.",
        )
        # the returned task finishes once the announcement has gone out
        task = await self.zeroconf.async_register_service(self.service_info)
        await task

    async def stop_service(self):
        if self.service_info:
            task = await self.zeroconf.async_unregister_service(self.service_info)
            await task
            self.service_info = None
