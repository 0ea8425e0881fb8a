from ir.ir import Device


def set_device(graph, device: Device):
    for node in graph.nodes:
        node.device = device
    return graph

def place_on_accelerator(graph):
    return set_device(graph, Device.ACCELERATOR)

def place_on_default(graph):
    return set_device(graph, Device.DEFAULT)

def graph_device(graph) -> Device:
    """The single device every node of ``graph`` is tagged with."""
    devices = {node.device for node in graph.nodes}
    if len(devices) > 1:
        raise ValueError(f"{graph.name}: mixed device placement is not supported")
    return devices.pop() if devices else Device.DEFAULT
