"""Remote gateways: the file-hosting backends a channel directory lives on."""
