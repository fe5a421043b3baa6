"""
端口映射注解解析
注解格式，每行一个端口:
    <port> <protocol> <pool[,pool...]> [useSamePortAcrossPools,certSecret=<name>]
"""

from clbnet.config.clbBindingConfig import PortEntry


def parse_port_mappings(anno):
    """将端口映射注解解析为 PortEntry 列表，格式错误抛出 ValueError"""
    ports = []
    for line in (anno or "").splitlines():
        fields = line.split()
        if not fields:
            continue
        if len(fields) < 3:
            raise ValueError(f"invalid port mapping: {line}")
        try:
            port = int(fields[0])
        except ValueError:
            raise ValueError(f"bad port number in port mapping: {line}")
        if not 0 < port <= 65535:
            raise ValueError(f"bad port number in port mapping: {line}")

        entry = {
            "port": port,
            "protocol": fields[1],
            "pools": [p for p in fields[2].split(",") if p],
        }
        if len(fields) >= 4:
            for option in fields[3].split(","):
                kv = option.split("=")
                if len(kv) == 1 and kv[0] == "useSamePortAcrossPools":
                    entry["useSamePortAcrossPools"] = True
                elif len(kv) == 2 and kv[0] == "certSecret":
                    entry["certSecretName"] = kv[1]
        ports.append(PortEntry(entry))
    return ports


def generate_binding_spec(anno, enable_port_mapping):
    """根据注解生成 CLBBinding 的 spec"""
    spec = {"ports": [p.to_dict() for p in parse_port_mappings(anno)]}
    if enable_port_mapping == "false":
        spec["disabled"] = True
    return spec
